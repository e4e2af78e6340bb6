"""EC2 스타일 리소스 모델(인스턴스, 볼륨, 이미지, 스냅샷, 템플릿, 키 페어)을 제공하는 libvirt 컨트롤 플레인."""

__version__ = "0.1.0"
