import logging
import os
import shlex
import uuid
from typing import Callable, List, Optional, Tuple

from vmplane.clients.errors import HypervisorError, HypervisorNotFoundError, ToolError
from vmplane.clients.hypervisor import (
    DOMAIN_STATE_CRASHED,
    DOMAIN_STATE_PAUSED,
    DOMAIN_STATE_RUNNING,
    DOMAIN_STATE_SHUT_OFF,
    DOMAIN_STATE_SHUTTING_DOWN,
    HypervisorClient,
    volume_id_from_path,
)
from vmplane.config import settings
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import IInstanceRepository
from vmplane.services.exceptions import (
    InstanceCreationError,
    InstanceNotFoundError,
    InstanceStateError,
    InvalidParameterError,
    InvalidStateError,
    PartialBatchFailureError,
    ResourceNotFoundError,
    UnderlyingToolError,
)
from vmplane.services.image_service import ImageService
from vmplane.services.keypair_service import KeyPairService
from vmplane.services.persistence import save_best_effort
from vmplane.services.storage_service import StorageService
from vmplane.services.types import AttributeModification, InstanceStateChange, RunInstanceRequest
from vmplane.utils.cloud_init import render_meta_data, render_user_data
from vmplane.utils.idgen import INSTANCE_PREFIX, generate_id
from vmplane.utils.vm_xml_generator import generate_domain_xml

logger = logging.getLogger(__name__)

STATE_PENDING = "pending"
STATE_RUNNING = "running"
STATE_STOPPING = "stopping"
STATE_STOPPED = "stopped"
STATE_PAUSED = "paused"
STATE_FAILED = "failed"
STATE_TERMINATED = "terminated"

# DB 레코드가 이 상태이면 조회 시 하이퍼바이저 상태로 갱신한다
TRANSITIONAL_STATES = {STATE_PENDING, STATE_STOPPING}

_DOMAIN_TO_INSTANCE_STATE = {
    DOMAIN_STATE_RUNNING: STATE_RUNNING,
    DOMAIN_STATE_SHUT_OFF: STATE_STOPPED,
    DOMAIN_STATE_SHUTTING_DOWN: STATE_STOPPING,
    DOMAIN_STATE_PAUSED: STATE_PAUSED,
    DOMAIN_STATE_CRASHED: STATE_FAILED,
}

# 배치 요청의 인스턴스별 오류, 그리고 정리 단계에서 경고로 낮추는 오류
_BATCH_ERRORS = (ResourceNotFoundError, InvalidStateError, UnderlyingToolError, RepositoryError)


def map_domain_state(domain_state: str) -> str:
    """하이퍼바이저 도메인 상태를 인스턴스 상태로 바꿉니다. 알 수 없는 상태는 pending."""
    return _DOMAIN_TO_INSTANCE_STATE.get(domain_state, STATE_PENDING)


def ensure_batch_succeeded(changes: List[InstanceStateChange]) -> List[InstanceStateChange]:
    """
    배치 결과에 실패가 하나라도 있으면 PartialBatchFailureError를 발생시킵니다.

    Raises:
        PartialBatchFailureError: 하나 이상의 인스턴스 처리에 실패했을 때.
    """
    failures = [change for change in changes if change.error is not None]
    if failures:
        ids = ", ".join(change.instance_id for change in failures)
        raise PartialBatchFailureError(f"{len(failures)} of {len(changes)} instance(s) failed: {ids}", changes)
    return changes


class ComputeService:
    def __init__(self, hypervisor: HypervisorClient, instance_repo: IInstanceRepository,
                 storage_service: StorageService, image_service: ImageService,
                 keypair_service: Optional[KeyPairService] = None,
                 node_name: str = settings.default_node,
                 bridge: str = settings.network_bridge,
                 disk_bus: str = settings.disk_bus,
                 cloud_init_dir: str = settings.cloud_init_dir,
                 default_volume_size_gb: int = settings.default_volume_size_gb,
                 default_memory_mb: int = settings.default_memory_mb,
                 default_vcpus: int = settings.default_vcpus):
        self.hypervisor = hypervisor
        self.instance_repo = instance_repo
        self.storage_service = storage_service
        self.image_service = image_service
        self.keypair_service = keypair_service
        self.node_name = node_name
        self.bridge = bridge
        self.disk_bus = disk_bus
        self.cloud_init_dir = cloud_init_dir
        self.default_volume_size_gb = default_volume_size_gb
        self.default_memory_mb = default_memory_mb
        self.default_vcpus = default_vcpus

    # ------------------------------------------------------------------
    # RunInstance
    # ------------------------------------------------------------------

    def run_instance(self, request: Optional[RunInstanceRequest] = None) -> models.Instance:
        """
        새로운 인스턴스를 생성하고 시작합니다.

        이미지 확인, 부트 볼륨 생성, (필요 시) cloud-init ISO 생성, 도메인 정의 및 시작,
        DB 메타데이터 저장을 차례로 수행합니다. 도메인 생성에 실패하면 만든 볼륨과 ISO를 정리합니다.

        Args:
            request: 인스턴스 사양. 비어 있는 값은 기본 이미지, 20GB, 2048MB, 2 vCPU로 채웁니다.

        Returns:
            running 상태의 인스턴스 레코드. DB 저장에 실패해도 반환합니다.

        Raises:
            ImageNotFoundError: 요청된 이미지를 찾을 수 없을 때.
            KeyPairNotFoundError: 요청된 키 페어가 없을 때.
            InvalidParameterError: 사양 값이 잘못되었을 때.
            StoragePoolUnavailableError, VolumeCreationError: 부트 볼륨을 만들지 못했을 때.
            InstanceCreationError: 도메인 생성 또는 시작에 실패했을 때.
        """
        request = request or RunInstanceRequest()
        instance_id = generate_id(INSTANCE_PREFIX)
        name = request.name or instance_id
        size_gb = self._positive("volume_size_gb", request.volume_size_gb, self.default_volume_size_gb)
        memory_mb = self._positive("memory_mb", request.memory_mb, self.default_memory_mb)
        vcpus = self._positive("vcpus", request.vcpus, self.default_vcpus)

        # 1. 요청 유효성 검사 (이미지, 키 페어)
        image = self.image_service.resolve_image(request.image_id)
        public_keys = self._resolve_public_keys(request.key_names)
        user_data = None
        if public_keys or request.user_data:
            try:
                user_data = render_user_data(public_keys, request.user_data)
            except ValueError as e:
                raise InvalidParameterError(f"Invalid user data: {e}") from e

        # 2. 부트 볼륨 생성 (실패 시 Provisioning 쪽에서 정리)
        volume = self.storage_service.create_volume_from_image(image, size_gb)

        iso_path = None
        try:
            # 3. cloud-init 데이터가 있으면 NoCloud ISO 생성
            if user_data is not None:
                iso_path = self.hypervisor.create_cloud_init_iso(
                    self.cloud_init_dir, instance_id, render_meta_data(instance_id, name), user_data,
                )

            # 4. 도메인 XML 생성 후 정의와 시작을 한 번에
            xml_config = generate_domain_xml(
                domain_name=instance_id,
                domain_uuid=str(uuid.uuid4()),
                vcpus=vcpus,
                memory_mb=memory_mb,
                disk_path=volume.path,
                bridge=self.bridge,
                disk_bus=self.disk_bus,
                disk_format=volume.format,
                cloud_init_iso=iso_path,
            )
            domain = self.hypervisor.create_domain(xml_config, start=True)

        except ToolError as e:
            logger.error(f"Instance '{instance_id}' creation failed: {e}. Starting rollback...")
            self._rollback_instance_creation(volume.id, iso_path)
            raise InstanceCreationError(f"Failed to create instance '{instance_id}'. Original error: {e}") from e

        # 5. DB에 인스턴스 메타데이터 저장 (실패해도 인스턴스는 이미 존재)
        instance = models.Instance(
            id=instance_id,
            name=name,
            state=map_domain_state(domain.state),
            image_id=image.id,
            volume_id=volume.id,
            memory_mb=memory_mb,
            vcpus=vcpus,
            node_name=self.node_name,
            domain_uuid=domain.uuid,
            domain_name=domain.name,
            key_name=",".join(request.key_names) or None,
        )
        save_best_effort(self.instance_repo.create, instance, f"instance '{instance_id}'")
        logger.info(f"Instance '{instance_id}' ({name}) is {instance.state} on volume '{volume.id}'")
        return instance

    def _rollback_instance_creation(self, volume_id: str, iso_path: Optional[str]):
        try:
            self.storage_service.delete_volume(volume_id)
        except _BATCH_ERRORS as e:
            logger.warning(f"Rollback Warning: Failed to delete volume '{volume_id}': {e}")

        if iso_path:
            self._remove_file(iso_path)

    def _cloud_init_iso_path(self, instance_id: str) -> str:
        return os.path.join(self.cloud_init_dir, f"{instance_id}-cidata.iso")

    def _remove_file(self, path: str):
        try:
            if self.hypervisor.is_remote():
                self.hypervisor.execute_remote_command(f"rm -f {shlex.quote(path)}")
            elif os.path.exists(path):
                os.remove(path)
        except (HypervisorError, OSError) as e:
            logger.warning(f"Cleanup Warning: Failed to remove '{path}': {e}")

    def _resolve_public_keys(self, key_names: List[str]) -> List[str]:
        if not key_names:
            return []
        if self.keypair_service is None:
            raise InvalidParameterError("Key pairs are not supported by this service.")
        return [self.keypair_service.get_key_pair(name).public_key for name in key_names]

    def _positive(self, field: str, value: Optional[int], default: int) -> int:
        if value is None:
            return default
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise InvalidParameterError(f"{field} must be a positive integer, got {value!r}.")
        return value

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_instance(self, instance_id: str, refresh: bool = False) -> models.Instance:
        """
        인스턴스를 조회합니다.

        DB 레코드를 먼저 사용하고, 레코드가 전이 상태(pending/stopping)이거나 refresh가 True이면
        하이퍼바이저의 실제 상태로 레코드를 갱신합니다. 레코드가 없으면 도메인 정보로 임시 레코드를
        만들어 반환합니다 (DB에는 저장하지 않음).

        Args:
            instance_id: 인스턴스 ID (도메인 이름).
            refresh: True이면 항상 하이퍼바이저 상태를 확인합니다.

        Raises:
            InstanceNotFoundError: DB와 하이퍼바이저 어디에도 없을 때.
            UnderlyingToolError: 하이퍼바이저 조회에 실패했을 때.
        """
        instance, _ = self._resolve(instance_id, refresh)
        return instance

    def describe_instances(self, instance_ids: Optional[List[str]] = None) -> List[models.Instance]:
        """
        인스턴스 목록을 실시간 상태와 함께 반환합니다.

        ID를 지정하지 않으면 DB 레코드와 DB에 없는 도메인을 모두 포함하며, 이름순으로 정렬합니다.
        """
        if instance_ids:
            instances = [self.get_instance(instance_id, refresh=True) for instance_id in instance_ids]
        else:
            instances = []
            known = set()
            for record in self.instance_repo.list():
                self._refresh_from_domain(record, persisted=True)
                known.add(self._domain_name(record))
                instances.append(record)

            try:
                domain_names = self.hypervisor.list_domain_names()
            except HypervisorError as e:
                raise UnderlyingToolError(f"Failed to list domains: {e}") from e
            for domain_name in domain_names:
                if domain_name in known:
                    continue
                try:
                    instances.append(self._reconstruct(domain_name))
                except InstanceNotFoundError:
                    continue

        return sorted(instances, key=lambda instance: instance.name or instance.id)

    def _resolve(self, instance_id: str, refresh: bool) -> Tuple[models.Instance, bool]:
        try:
            record = self.instance_repo.find_by_id(instance_id)
        except RepositoryError as e:
            logger.warning(f"DB Warning: Failed to load instance '{instance_id}', using live state: {e}")
            record = None

        if record is None:
            return self._reconstruct(instance_id), False

        if refresh or record.state in TRANSITIONAL_STATES:
            self._refresh_from_domain(record, persisted=True)
        return record, True

    def _refresh_from_domain(self, instance: models.Instance, persisted: bool):
        domain_name = self._domain_name(instance)
        try:
            live_state = map_domain_state(self.hypervisor.get_domain(domain_name).state)
        except HypervisorNotFoundError:
            logger.warning(f"Domain '{domain_name}' for instance '{instance.id}' not found; keeping '{instance.state}'.")
            return
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to read state of '{domain_name}': {e}") from e

        if live_state != instance.state:
            logger.info(f"Instance '{instance.id}' state {instance.state} -> {live_state} (observed)")
            instance.state = live_state
            if persisted:
                save_best_effort(self.instance_repo.update, instance, f"state of instance '{instance.id}'")

    def _reconstruct(self, domain_name: str) -> models.Instance:
        try:
            domain = self.hypervisor.get_domain(domain_name)
            disks = self.hypervisor.get_domain_disks(domain_name)
        except HypervisorNotFoundError as e:
            raise InstanceNotFoundError(f"Instance '{domain_name}' not found.") from e
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to look up domain '{domain_name}': {e}") from e

        boot_disk = next((d for d in disks if d.device == "disk" and d.source_file), None)
        return models.Instance(
            id=domain.name,
            name=domain.name,
            state=map_domain_state(domain.state),
            volume_id=volume_id_from_path(boot_disk.source_file) if boot_disk else None,
            memory_mb=domain.memory_kib // 1024,
            vcpus=domain.vcpus,
            node_name=self.node_name,
            domain_uuid=domain.uuid,
            domain_name=domain.name,
        )

    def _domain_name(self, instance: models.Instance) -> str:
        return instance.domain_name or instance.id

    # ------------------------------------------------------------------
    # Stop / Start / Reboot / Terminate
    # ------------------------------------------------------------------

    def stop_instances(self, instance_ids: List[str], force: bool = False) -> List[InstanceStateChange]:
        """
        인스턴스를 정지합니다. 이미 stopped인 인스턴스는 하이퍼바이저 호출 없이 성공 처리합니다.

        Args:
            instance_ids: 대상 인스턴스 ID 목록.
            force: True이면 강제 종료(stopped), False이면 ACPI 종료 요청(stopping).

        Returns:
            인스턴스별 상태 변화 목록. 실패한 인스턴스는 error가 채워집니다.
        """
        return self._run_batch(instance_ids, lambda instance_id: self._stop_one(instance_id, force), "stop")

    def start_instances(self, instance_ids: List[str]) -> List[InstanceStateChange]:
        """인스턴스를 시작합니다. 이미 running인 인스턴스는 그대로 성공 처리합니다."""
        return self._run_batch(instance_ids, self._start_one, "start")

    def reboot_instances(self, instance_ids: List[str]) -> List[InstanceStateChange]:
        """인스턴스를 재부팅합니다. stopped 인스턴스는 시작합니다."""
        return self._run_batch(instance_ids, self._reboot_one, "reboot")

    def terminate_instances(self, instance_ids: List[str]) -> List[InstanceStateChange]:
        """
        인스턴스를 종료하고 정리합니다.

        도메인을 삭제하고, 부트 볼륨 삭제를 시도한 뒤(실패해도 계속), 레코드를 소프트 삭제합니다.
        """
        return self._run_batch(instance_ids, self._terminate_one, "terminate")

    def _run_batch(self, instance_ids: List[str], action: Callable[[str], InstanceStateChange],
                   verb: str) -> List[InstanceStateChange]:
        changes = []
        for instance_id in instance_ids:
            try:
                changes.append(action(instance_id))
            except _BATCH_ERRORS as e:
                logger.error(f"Failed to {verb} instance '{instance_id}': {e}")
                changes.append(InstanceStateChange(instance_id, None, None, error=e))
        return changes

    def _stop_one(self, instance_id: str, force: bool) -> InstanceStateChange:
        instance, persisted = self._resolve(instance_id, refresh=True)
        previous = instance.state
        self._reject_terminated(instance)

        if previous == STATE_STOPPED or (previous == STATE_STOPPING and not force):
            return InstanceStateChange(instance_id, previous, previous)

        domain_name = self._domain_name(instance)
        try:
            if force:
                self.hypervisor.destroy_domain(domain_name)
            else:
                self.hypervisor.shutdown_domain(domain_name)
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to stop '{domain_name}': {e}") from e

        return self._transition(instance, persisted, previous, STATE_STOPPED if force else STATE_STOPPING)

    def _start_one(self, instance_id: str) -> InstanceStateChange:
        instance, persisted = self._resolve(instance_id, refresh=True)
        previous = instance.state
        self._reject_terminated(instance)

        if previous == STATE_RUNNING:
            return InstanceStateChange(instance_id, previous, previous)
        if previous in (STATE_PAUSED, STATE_STOPPING):
            raise InstanceStateError(f"Instance '{instance_id}' cannot be started while '{previous}'.")

        domain_name = self._domain_name(instance)
        try:
            self.hypervisor.start_domain(domain_name)
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to start '{domain_name}': {e}") from e

        return self._transition(instance, persisted, previous, STATE_RUNNING)

    def _reboot_one(self, instance_id: str) -> InstanceStateChange:
        instance, persisted = self._resolve(instance_id, refresh=True)
        previous = instance.state
        self._reject_terminated(instance)

        domain_name = self._domain_name(instance)
        try:
            if previous == STATE_STOPPED:
                self.hypervisor.start_domain(domain_name)
            elif previous == STATE_RUNNING:
                self.hypervisor.reboot_domain(domain_name)
            else:
                raise InstanceStateError(f"Instance '{instance_id}' cannot be rebooted while '{previous}'.")
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to reboot '{domain_name}': {e}") from e

        return self._transition(instance, persisted, previous, STATE_RUNNING)

    def _terminate_one(self, instance_id: str) -> InstanceStateChange:
        instance, persisted = self._resolve(instance_id, refresh=False)
        previous = instance.state
        self._reject_terminated(instance)

        domain_name = self._domain_name(instance)
        try:
            self.hypervisor.delete_domain(domain_name)
        except HypervisorNotFoundError:
            logger.warning(f"Domain '{domain_name}' already gone; cleaning up records.")
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to delete domain '{domain_name}': {e}") from e

        if instance.volume_id:
            try:
                self.storage_service.delete_volume(instance.volume_id)
            except _BATCH_ERRORS as e:
                logger.warning(f"Volume '{instance.volume_id}' of '{instance_id}' was not deleted: {e}")

        self._remove_file(self._cloud_init_iso_path(instance_id))

        instance.state = STATE_TERMINATED
        if persisted:
            save_best_effort(self.instance_repo.soft_delete, instance, f"termination of instance '{instance_id}'")
        logger.info(f"Instance '{instance_id}' terminated (was {previous})")
        return InstanceStateChange(instance_id, previous, STATE_TERMINATED)

    def _reject_terminated(self, instance: models.Instance):
        if instance.state == STATE_TERMINATED:
            raise InstanceStateError(f"Instance '{instance.id}' is terminated.")

    def _transition(self, instance: models.Instance, persisted: bool, previous: str, current: str) -> InstanceStateChange:
        instance.state = current
        if persisted:
            save_best_effort(self.instance_repo.update, instance, f"state of instance '{instance.id}'")
        logger.info(f"Instance '{instance.id}' {previous} -> {current}")
        return InstanceStateChange(instance.id, previous, current)

    # ------------------------------------------------------------------
    # ModifyInstanceAttribute
    # ------------------------------------------------------------------

    def modify_instance_attribute(self, instance_id: str, memory_mb: Optional[int] = None,
                                  vcpus: Optional[int] = None, name: Optional[str] = None,
                                  live: bool = False) -> AttributeModification:
        """
        인스턴스의 vCPU, 메모리, 이름을 변경합니다.

        vCPU와 메모리는 각각 독립적으로 적용합니다. 먼저 적용된 변경은 나중 변경이 실패해도
        되돌리지 않으며, 실패한 항목은 결과의 failed에 담깁니다.

        Args:
            instance_id: 대상 인스턴스 ID.
            memory_mb: 새 메모리 크기 (MB).
            vcpus: 새 vCPU 수.
            name: 새 표시 이름.
            live: True이면 실행 중인 도메인에 즉시 적용, False이면 다음 부팅부터 적용.

        Raises:
            InstanceNotFoundError: 인스턴스가 없을 때.
            InvalidParameterError: 변경할 값이 없거나 잘못되었을 때.
            InstanceStateError: live 변경을 실행 중이 아닌 인스턴스에 요청했을 때.
        """
        if memory_mb is None and vcpus is None and not name:
            raise InvalidParameterError("Nothing to modify.")
        if vcpus is not None:
            self._positive("vcpus", vcpus, vcpus)
        if memory_mb is not None:
            self._positive("memory_mb", memory_mb, memory_mb)

        instance, persisted = self._resolve(instance_id, refresh=True)
        self._reject_terminated(instance)
        if live and (vcpus is not None or memory_mb is not None) and instance.state != STATE_RUNNING:
            raise InstanceStateError(f"Live changes require a running instance; '{instance_id}' is '{instance.state}'.")

        domain_name = self._domain_name(instance)
        result = AttributeModification(instance_id=instance_id)

        if vcpus is not None:
            try:
                self.hypervisor.set_vcpus(domain_name, vcpus, live)
                instance.vcpus = vcpus
                result.applied["vcpus"] = vcpus
            except HypervisorError as e:
                logger.error(f"Failed to set vCPUs of '{instance_id}' to {vcpus}: {e}")
                result.failed["vcpus"] = str(e)

        if memory_mb is not None:
            try:
                self.hypervisor.set_memory(domain_name, memory_mb * 1024, live)
                instance.memory_mb = memory_mb
                result.applied["memory_mb"] = memory_mb
            except HypervisorError as e:
                logger.error(f"Failed to set memory of '{instance_id}' to {memory_mb}MB: {e}")
                result.failed["memory_mb"] = str(e)

        if name:
            instance.name = name
            result.applied["name"] = name

        if result.applied and persisted:
            save_best_effort(self.instance_repo.update, instance, f"attributes of instance '{instance_id}'")
        return result
