# vmplane/utils/vm_xml_generator.py
from pathlib import Path
from typing import Optional
from xml.sax.saxutils import escape, quoteattr

# 패키지 안의 configs/domain_template.xml을 사용합니다.
PACKAGE_ROOT = Path(__file__).resolve().parent.parent
TEMPLATE_PATH = str(PACKAGE_ROOT / 'configs' / 'domain_template.xml')

CDROM_BLOCK = """    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file={iso_path}/>
      <target dev='sda' bus='sata'/>
      <readonly/>
    </disk>
"""

def get_xml_template():
    """템플릿 파일을 읽어 XML 내용을 반환합니다."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Domain template file not found at {TEMPLATE_PATH}. Please check 'configs/domain_template.xml'.")

# 템플릿 내용은 한 번만 읽어 둔다
XML_TEMPLATE = get_xml_template()


def _attr(value) -> str:
    # 템플릿의 속성 값은 작은따옴표로 감싸여 있다
    return escape(str(value), {"'": "&apos;"})


def generate_domain_xml(domain_name: str, domain_uuid: str, vcpus: int, memory_mb: int, disk_path: str,
                        bridge: str = "br0", disk_bus: str = "virtio", disk_format: str = "qcow2",
                        cloud_init_iso: Optional[str] = None) -> str:
    """
    템플릿에 인스턴스 사양을 채워 넣어 최종 도메인 XML을 생성합니다.

    Args:
        domain_name: 하이퍼바이저 도메인 이름 (인스턴스 ID).
        domain_uuid: 도메인 UUID.
        vcpus: 가상 CPU 수.
        memory_mb: 메모리 크기 (MB). XML에는 KiB로 기록됩니다.
        disk_path: 부트 볼륨 파일 경로.
        bridge: 네트워크 인터페이스를 연결할 호스트 브리지.
        disk_bus: 부트 디스크 버스.
        disk_format: 부트 디스크 포맷.
        cloud_init_iso: 지정하면 NoCloud ISO를 CD-ROM으로 연결합니다.

    Returns:
        libvirt defineXML에 넘길 XML 문자열.
    """
    # 메모리는 KiB 단위로 변환
    memory_kib = memory_mb * 1024

    cdrom = CDROM_BLOCK.format(iso_path=quoteattr(cloud_init_iso)) if cloud_init_iso else ""

    return XML_TEMPLATE.format(
        domain_name=escape(domain_name),
        domain_uuid=domain_uuid,
        vcpus=vcpus,
        memory_kib=memory_kib,
        disk_path=_attr(disk_path),
        disk_bus=_attr(disk_bus),
        disk_format=_attr(disk_format),
        bridge=_attr(bridge),
        cdrom=cdrom,
    )
