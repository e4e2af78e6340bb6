# vmplane/clients/errors.py


class ToolError(Exception):
    """하이퍼바이저/디스크 도구 등 외부 도구 호출 실패"""
    pass

class HypervisorError(ToolError):
    """libvirt 호출 실패 시"""
    pass

class HypervisorNotFoundError(HypervisorError):
    """하이퍼바이저에 요청한 도메인/볼륨/풀이 없을 때"""
    pass

class DiskToolError(ToolError):
    """qemu-img 실행 실패 시"""
    pass

class GuestCustomizeError(ToolError):
    """virt-customize 실행 또는 디스크 경로 검증 실패 시"""
    pass
