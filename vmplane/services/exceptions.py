# vmplane/services/exceptions.py

# --- Not Found Exceptions ---
class ResourceNotFoundError(Exception):
    """요청한 리소스를 찾을 수 없을 때"""
    pass

class InstanceNotFoundError(ResourceNotFoundError):
    """인스턴스를 찾을 수 없을 때"""
    pass

class VolumeNotFoundError(ResourceNotFoundError):
    """볼륨을 찾을 수 없을 때"""
    pass

class ImageNotFoundError(ResourceNotFoundError):
    """이미지를 찾을 수 없을 때"""
    pass

class SnapshotNotFoundError(ResourceNotFoundError):
    """스냅샷을 찾을 수 없을 때"""
    pass

class TemplateNotFoundError(ResourceNotFoundError):
    """템플릿을 찾을 수 없을 때"""
    pass

class KeyPairNotFoundError(ResourceNotFoundError):
    """키 페어를 찾을 수 없을 때"""
    pass

class DownloadTaskNotFoundError(ResourceNotFoundError):
    """다운로드 작업을 찾을 수 없을 때"""
    pass

# --- Invalid State Exceptions ---
class InvalidStateError(Exception):
    """현재 리소스 상태에서 허용되지 않는 요청일 때"""
    pass

class VolumeInUseError(InvalidStateError):
    """연결된(attached) 볼륨을 삭제하거나 다시 연결하려고 할 때"""
    pass

class SnapshotNotReadyError(InvalidStateError):
    """completed 상태가 아닌 스냅샷을 원본으로 사용하려고 할 때"""
    pass

class InstanceStateError(InvalidStateError):
    """인스턴스 상태 전이가 허용되지 않을 때 (예: terminated 인스턴스 시작)"""
    pass

# --- Validation Exceptions ---
class InvalidParameterError(ValueError):
    """요청 파라미터가 잘못되었을 때"""
    pass

class KeyPairAlreadyExistsError(Exception):
    """키 페어 이름이 이미 존재할 때"""
    pass

class CapabilityUnavailableError(Exception):
    """요청을 수행할 수단이 없을 때 (예: 게스트 에이전트 없이 실행 중인 인스턴스의 비밀번호 변경)"""
    pass

# --- Underlying Tool Exceptions ---
class UnderlyingToolError(Exception):
    """하이퍼바이저, qemu-img, virt-customize 등 하위 도구 호출이 실패했을 때"""
    pass

class VolumeCreationError(UnderlyingToolError):
    """볼륨 생성 과정(풀, 디스크 도구 등)에서 오류 발생 시"""
    pass

class InstanceCreationError(UnderlyingToolError):
    """인스턴스 생성 과정(볼륨, 도메인 정의 등)에서 오류 발생 시"""
    pass

class SnapshotCreationError(UnderlyingToolError):
    """스냅샷 생성 실패 시"""
    pass

class PasswordResetError(UnderlyingToolError):
    """비밀번호 변경 도구 실행 실패 시"""
    pass

class StoragePoolUnavailableError(UnderlyingToolError):
    """대상 스토리지 풀이 없거나 비활성 상태일 때"""
    pass

class NoDiskFoundError(UnderlyingToolError):
    """인스턴스의 부트 디스크를 찾을 수 없을 때"""
    pass

# --- Batch Exceptions ---
class PartialBatchFailureError(Exception):
    """여러 인스턴스에 대한 요청 중 일부가 실패했을 때. results에 인스턴스별 결과가 담깁니다."""

    def __init__(self, message, results):
        super().__init__(message)
        self.results = results
