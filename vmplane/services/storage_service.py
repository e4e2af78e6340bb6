import logging
import os
import re
from typing import Dict, List, Optional

from vmplane.clients.disk_tool import DiskToolClient
from vmplane.clients.errors import HypervisorError, HypervisorNotFoundError, ToolError
from vmplane.clients.hypervisor import GIB, HypervisorClient, volume_id_from_path
from vmplane.config import settings
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import ISnapshotRepository, IVolumeRepository
from vmplane.services.exceptions import (
    ImageNotFoundError,
    InvalidParameterError,
    InvalidStateError,
    InstanceNotFoundError,
    SnapshotNotFoundError,
    SnapshotNotReadyError,
    StoragePoolUnavailableError,
    UnderlyingToolError,
    VolumeCreationError,
    VolumeInUseError,
    VolumeNotFoundError,
)
from vmplane.services.persistence import save_best_effort
from vmplane.services.types import VolumeAttachment, VolumeDescription
from vmplane.utils.idgen import VOLUME_PREFIX, generate_id

logger = logging.getLogger(__name__)

VOLUME_AVAILABLE = "available"
VOLUME_IN_USE = "in-use"
VOLUME_ATTACHED_TRANSITION = "attached-transition"

# 추가 디스크에 할당할 수 있는 장치 이름 (/dev/vda는 부트 디스크)
DEVICE_SLOTS = [f"/dev/vd{letter}" for letter in "bcdefghijklmnopqrstuvwxyz"]
_DEVICE_PATTERN = re.compile(r"^/dev/vd[b-z]$")


class StorageService:
    def __init__(self, hypervisor: HypervisorClient, disk_tool: DiskToolClient,
                 volume_repo: IVolumeRepository, snapshot_repo: ISnapshotRepository,
                 default_pool: str = settings.default_pool, images_pool: str = settings.images_pool,
                 node_name: str = settings.default_node, volume_format: str = "qcow2"):
        """
        StorageService를 초기화합니다.

        Args:
            hypervisor: 볼륨/풀/도메인 조작에 사용할 하이퍼바이저 클라이언트.
            disk_tool: 복제/변환/리사이즈에 사용할 디스크 도구 클라이언트.
            volume_repo: 볼륨 메타데이터 리포지토리.
            snapshot_repo: 스냅샷에서 볼륨을 만들 때 원본을 조회할 리포지토리.
            default_pool: 새 볼륨을 만들 기본 스토리지 풀.
            images_pool: 기반 이미지가 있는 스토리지 풀. 볼륨 조회 시 함께 찾습니다.
            node_name: 이 서비스가 다루는 노드 이름.
            volume_format: 새 볼륨의 디스크 포맷.
        """
        self.hypervisor = hypervisor
        self.disk_tool = disk_tool
        self.volume_repo = volume_repo
        self.snapshot_repo = snapshot_repo
        self.default_pool = default_pool
        self.images_pool = images_pool
        self.node_name = node_name
        self.volume_format = volume_format

    # ------------------------------------------------------------------
    # 생성
    # ------------------------------------------------------------------

    def create_volume_from_image(self, image: Optional[models.Image], size_gb: Optional[int] = None,
                                 volume_id: Optional[str] = None, pool: Optional[str] = None) -> models.Volume:
        """
        이미지를 원본으로 새 볼륨을 만듭니다.

        이미지 크기가 요청 크기 이하이면 이미지를 backing file로 하는 CoW 복제본을 만들고,
        요청 크기가 더 크면 복제본을 늘립니다. 이미지가 더 크면 전체 변환(convert)을 수행합니다.

        Args:
            image: 원본 이미지 레코드.
            size_gb: 요청 크기 (GB). 없으면 기본 볼륨 크기.
            volume_id: 사용할 볼륨 ID. 없으면 새로 발급합니다.
            pool: 대상 스토리지 풀. 없으면 기본 풀.

        Returns:
            생성된 볼륨 레코드.

        Raises:
            ImageNotFoundError: 이미지가 없을 때.
            InvalidParameterError: 크기가 0 이하일 때.
            StoragePoolUnavailableError: 대상 풀이 없거나 비활성일 때.
            VolumeCreationError: 볼륨 생성/복제/변환에 실패했을 때. 만든 볼륨은 삭제됩니다.
        """
        if image is None:
            raise ImageNotFoundError("Source image not found.")
        size_gb = self._validate_size(size_gb if size_gb is not None else settings.default_volume_size_gb)

        volume = self._materialize(
            volume_id=volume_id or generate_id(VOLUME_PREFIX),
            pool=pool or self.default_pool,
            source_path=image.path,
            source_format=image.format or "qcow2",
            source_size_gb=image.size_gb,
            size_gb=size_gb,
        )
        volume.source_image_id = image.id
        return self._record_new_volume(volume)

    def create_volume_from_snapshot(self, snapshot_id: str, size_gb: Optional[int] = None) -> models.Volume:
        """
        completed 상태의 스냅샷을 원본으로 새 볼륨을 만듭니다. 볼륨은 스냅샷과 같은 풀에 생깁니다.

        Raises:
            SnapshotNotFoundError: 스냅샷이 없을 때.
            SnapshotNotReadyError: 스냅샷이 completed 상태가 아닐 때.
            StoragePoolUnavailableError, VolumeCreationError: create_volume_from_image와 같습니다.
        """
        snapshot = self.snapshot_repo.find_by_id(snapshot_id)
        if not snapshot:
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found.")
        if snapshot.state != "completed":
            raise SnapshotNotReadyError(f"Snapshot '{snapshot_id}' is '{snapshot.state}', not 'completed'.")
        size_gb = self._validate_size(size_gb if size_gb is not None else snapshot.size_gb)

        volume = self._materialize(
            volume_id=generate_id(VOLUME_PREFIX),
            pool=snapshot.pool,
            source_path=snapshot.path,
            source_format="qcow2",
            source_size_gb=snapshot.size_gb,
            size_gb=size_gb,
        )
        volume.source_snapshot_id = snapshot.id
        return self._record_new_volume(volume)

    def create_volume(self, size_gb: int, pool: Optional[str] = None) -> models.Volume:
        """원본 없이 빈 볼륨을 만듭니다."""
        size_gb = self._validate_size(size_gb)
        pool = pool or self.default_pool
        self._require_active_pool(pool)

        volume_id = generate_id(VOLUME_PREFIX)
        try:
            info = self.hypervisor.create_volume(pool, self._file_name(volume_id), size_gb, self.volume_format)
        except HypervisorError as e:
            raise VolumeCreationError(f"Failed to create volume '{volume_id}' in pool '{pool}': {e}") from e

        volume = self._new_volume_record(volume_id, pool, size_gb, info.path, info.capacity_bytes)
        return self._record_new_volume(volume)

    def _materialize(self, volume_id, pool, source_path, source_format, source_size_gb, size_gb) -> models.Volume:
        self._require_active_pool(pool)
        name = self._file_name(volume_id)

        try:
            info = self.hypervisor.create_volume(pool, name, size_gb, self.volume_format)
        except HypervisorError as e:
            raise VolumeCreationError(f"Failed to create volume '{volume_id}' in pool '{pool}': {e}") from e

        # 여기부터 실패하면 방금 만든 볼륨을 지운다
        try:
            if source_size_gb <= size_gb:
                logger.info(f"Cloning {source_path} -> {info.path} (backing file, {source_size_gb}GB -> {size_gb}GB)")
                self.disk_tool.clone_from_backing_file(self.volume_format, source_format, source_path, info.path)
                if size_gb > source_size_gb:
                    self.disk_tool.resize(info.path, size_gb)
            else:
                logger.info(f"Converting {source_path} -> {info.path} (source {source_size_gb}GB > target {size_gb}GB)")
                self.disk_tool.convert(source_format, self.volume_format, source_path, info.path)

            self.hypervisor.refresh_storage_pool(pool)
            info = self.hypervisor.get_volume(pool, name)
        except ToolError as e:
            logger.error(f"Volume '{volume_id}' materialization failed: {e}. Starting rollback...")
            self._rollback_volume(pool, name)
            raise VolumeCreationError(f"Failed to create volume '{volume_id}'. Original error: {e}") from e

        return self._new_volume_record(volume_id, pool, size_gb, info.path, info.capacity_bytes)

    def _rollback_volume(self, pool: str, name: str):
        try:
            self.hypervisor.delete_volume(pool, name)
        except HypervisorNotFoundError:
            pass
        except HypervisorError as e:
            logger.warning(f"Rollback Warning: Failed to delete volume '{name}' in pool '{pool}': {e}")

    def _new_volume_record(self, volume_id, pool, size_gb, path, capacity_bytes) -> models.Volume:
        return models.Volume(
            id=volume_id,
            pool=pool,
            path=path,
            size_gb=size_gb,
            actual_size_bytes=capacity_bytes,
            format=self.volume_format,
            state=VOLUME_AVAILABLE,
            node_name=self.node_name,
        )

    def _record_new_volume(self, volume: models.Volume) -> models.Volume:
        save_best_effort(self.volume_repo.create, volume, f"volume '{volume.id}'")
        logger.info(f"Volume '{volume.id}' created at {volume.path}")
        return volume

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_volume(self, volume_id: str) -> models.Volume:
        """
        볼륨을 조회합니다. DB 레코드가 없으면 기본 풀과 이미지 풀에서 <id>.<format> 파일을 찾습니다.

        Raises:
            VolumeNotFoundError: 어디에서도 찾지 못했을 때.
        """
        volume = self._find_record(volume_id)
        if volume:
            return volume
        return self._find_live(volume_id)

    def _find_record(self, volume_id: str) -> Optional[models.Volume]:
        try:
            return self.volume_repo.find_by_id(volume_id)
        except RepositoryError as e:
            logger.warning(f"DB Warning: Failed to load volume '{volume_id}', using live lookup: {e}")
            return None

    def _find_live(self, volume_id: str) -> models.Volume:
        for pool in dict.fromkeys([self.default_pool, self.images_pool]):
            try:
                info = self.hypervisor.get_volume(pool, self._file_name(volume_id))
            except HypervisorNotFoundError:
                continue
            except HypervisorError as e:
                logger.warning(f"Volume lookup in pool '{pool}' failed: {e}")
                continue
            return models.Volume(
                id=volume_id,
                pool=pool,
                path=info.path,
                size_gb=-(-info.capacity_bytes // GIB),
                actual_size_bytes=info.capacity_bytes,
                format=info.format,
                state=VOLUME_AVAILABLE,
                node_name=self.node_name,
            )

        raise VolumeNotFoundError(f"Volume '{volume_id}' not found.")

    def describe_volume(self, volume_id: str) -> VolumeDescription:
        volume = self.get_volume(volume_id)
        attachments = self._attachment_map().get(volume.path, [])
        return self._describe(volume, attachments)

    def describe_volumes(self, state: Optional[str] = None) -> List[VolumeDescription]:
        """
        DB에 기록된 모든 볼륨을 실제 연결 상태와 함께 반환합니다.

        Args:
            state: 지정하면 실제 상태(available/in-use)가 일치하는 볼륨만 반환합니다.
        """
        attachment_map = self._attachment_map()
        descriptions = [
            self._describe(volume, attachment_map.get(volume.path, []))
            for volume in self.volume_repo.list()
        ]
        if state:
            descriptions = [d for d in descriptions if d.state == state]
        return descriptions

    def _describe(self, volume: models.Volume, attachments: List[VolumeAttachment]) -> VolumeDescription:
        live_state = VOLUME_IN_USE if attachments else VOLUME_AVAILABLE
        if volume.state == VOLUME_ATTACHED_TRANSITION:
            live_state = VOLUME_ATTACHED_TRANSITION
        return VolumeDescription(volume=volume, state=live_state, attachments=attachments)

    def _attachment_map(self) -> Dict[str, List[VolumeAttachment]]:
        """모든 도메인의 디스크 목록을 훑어 볼륨 경로 -> 연결 정보 목록을 만듭니다."""
        attachments: Dict[str, List[VolumeAttachment]] = {}
        try:
            domain_names = self.hypervisor.list_domain_names()
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to list domains: {e}") from e

        for domain_name in domain_names:
            try:
                disks = self.hypervisor.get_domain_disks(domain_name)
            except HypervisorNotFoundError:
                # 목록 조회와 디스크 조회 사이에 삭제된 도메인
                continue
            except HypervisorError as e:
                raise UnderlyingToolError(f"Failed to read disks of '{domain_name}': {e}") from e
            for disk in disks:
                if disk.device != "disk" or not disk.source_file:
                    continue
                attachments.setdefault(disk.source_file, []).append(VolumeAttachment(
                    volume_id="",
                    instance_id=domain_name,
                    device=f"/dev/{disk.target_dev}",
                ))

        for path, items in attachments.items():
            for item in items:
                item.volume_id = volume_id_from_path(path)
        return attachments

    # ------------------------------------------------------------------
    # 삭제 / 리사이즈
    # ------------------------------------------------------------------

    def delete_volume(self, volume_id: str) -> bool:
        """
        볼륨 파일과 레코드를 삭제합니다.

        Raises:
            VolumeNotFoundError: 볼륨이 없을 때.
            VolumeInUseError: 어떤 도메인이든 이 볼륨을 디스크로 참조하고 있을 때.
            UnderlyingToolError: 하이퍼바이저가 삭제에 실패했을 때.
        """
        record = self._find_record(volume_id)
        volume = record or self._find_live(volume_id)

        attachments = self._attachment_map().get(volume.path, [])
        if attachments:
            users = ", ".join(a.instance_id for a in attachments)
            raise VolumeInUseError(f"Volume '{volume_id}' is attached to {users}; detach it first.")

        try:
            self.hypervisor.delete_volume(volume.pool, os.path.basename(volume.path))
        except HypervisorNotFoundError:
            logger.warning(f"Volume file for '{volume_id}' already gone from pool '{volume.pool}'.")
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to delete volume '{volume_id}': {e}") from e

        if record:
            save_best_effort(self.volume_repo.soft_delete, record, f"deletion of volume '{volume_id}'")
        logger.info(f"Volume '{volume_id}' deleted.")
        return True

    def resize_volume(self, volume_id: str, new_size_gb: int) -> models.Volume:
        """
        볼륨을 늘립니다. 줄이는 요청은 거부합니다.

        Raises:
            VolumeNotFoundError: 볼륨이 없을 때.
            InvalidParameterError: 새 크기가 현재 크기보다 작을 때.
            UnderlyingToolError: 하이퍼바이저가 리사이즈에 실패했을 때.
        """
        new_size_gb = self._validate_size(new_size_gb)
        volume = self.get_volume(volume_id)
        if new_size_gb < volume.size_gb:
            raise InvalidParameterError(
                f"Cannot shrink volume '{volume_id}' from {volume.size_gb}GB to {new_size_gb}GB."
            )
        if new_size_gb == volume.size_gb:
            return volume

        name = os.path.basename(volume.path)
        try:
            self.hypervisor.resize_volume(volume.pool, name, new_size_gb)
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to resize volume '{volume_id}': {e}") from e

        volume.size_gb = new_size_gb
        try:
            volume.actual_size_bytes = self.hypervisor.get_volume(volume.pool, name).capacity_bytes
        except HypervisorError as e:
            logger.warning(f"Could not read back size of volume '{volume_id}': {e}")
        save_best_effort(self.volume_repo.update, volume, f"size of volume '{volume_id}'")
        return volume

    # ------------------------------------------------------------------
    # 연결 / 해제
    # ------------------------------------------------------------------

    def attach_volume(self, volume_id: str, instance_id: str, device: Optional[str] = None) -> VolumeAttachment:
        """
        볼륨을 인스턴스에 연결합니다.

        Args:
            volume_id: 연결할 볼륨 ID.
            instance_id: 대상 인스턴스(도메인) 이름.
            device: 원하는 장치 이름 (예: /dev/vdc). 없으면 /dev/vdb부터 빈 슬롯을 고릅니다.

        Raises:
            VolumeNotFoundError: 볼륨이 없을 때.
            InstanceNotFoundError: 도메인이 없을 때.
            VolumeInUseError: 볼륨이 이미 다른 곳에 연결되어 있을 때.
            InvalidParameterError: 요청한 장치 이름이 잘못되었거나 이미 사용 중일 때.
            InvalidStateError: 빈 장치 슬롯이 없을 때.
            UnderlyingToolError: 하이퍼바이저 연결 작업이 실패했을 때.
        """
        volume = self.get_volume(volume_id)
        attachments = self._attachment_map().get(volume.path, [])
        if attachments:
            raise VolumeInUseError(f"Volume '{volume_id}' is already attached to {attachments[0].instance_id}.")

        try:
            disks = self.hypervisor.get_domain_disks(instance_id)
        except HypervisorNotFoundError as e:
            raise InstanceNotFoundError(f"Instance '{instance_id}' not found.") from e
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to read disks of '{instance_id}': {e}") from e

        device = self._allocate_device({f"/dev/{d.target_dev}" for d in disks}, device)

        self._set_cached_state(volume, VOLUME_ATTACHED_TRANSITION)
        try:
            self.hypervisor.attach_disk(instance_id, volume.path, device)
        except HypervisorError as e:
            self._set_cached_state(volume, VOLUME_AVAILABLE)
            raise UnderlyingToolError(f"Failed to attach '{volume_id}' to '{instance_id}': {e}") from e

        self._set_cached_state(volume, VOLUME_IN_USE)
        logger.info(f"Volume '{volume_id}' attached to '{instance_id}' as {device}")
        return VolumeAttachment(volume_id=volume.id, instance_id=instance_id, device=device)

    def detach_volume(self, volume_id: str, instance_id: Optional[str] = None) -> VolumeAttachment:
        """
        볼륨 연결을 해제합니다.

        Raises:
            VolumeNotFoundError: 볼륨이 없을 때.
            InvalidStateError: 볼륨이 (지정한 인스턴스에) 연결되어 있지 않을 때.
            UnderlyingToolError: 하이퍼바이저 해제 작업이 실패했을 때.
        """
        volume = self.get_volume(volume_id)
        attachments = self._attachment_map().get(volume.path, [])
        if instance_id:
            attachments = [a for a in attachments if a.instance_id == instance_id]
        if not attachments:
            target = f" from '{instance_id}'" if instance_id else ""
            raise InvalidStateError(f"Volume '{volume_id}' is not attached{target}.")

        attachment = attachments[0]
        self._set_cached_state(volume, VOLUME_ATTACHED_TRANSITION)
        try:
            self.hypervisor.detach_disk(attachment.instance_id, attachment.device)
        except HypervisorError as e:
            self._set_cached_state(volume, VOLUME_IN_USE)
            raise UnderlyingToolError(f"Failed to detach '{volume_id}' from '{attachment.instance_id}': {e}") from e

        self._set_cached_state(volume, VOLUME_AVAILABLE)
        logger.info(f"Volume '{volume_id}' detached from '{attachment.instance_id}' ({attachment.device})")
        return VolumeAttachment(
            volume_id=volume.id, instance_id=attachment.instance_id, device=attachment.device, state="detached",
        )

    def _allocate_device(self, used: set, requested: Optional[str]) -> str:
        if requested:
            if not requested.startswith("/dev/"):
                requested = f"/dev/{requested}"
            if not _DEVICE_PATTERN.match(requested):
                raise InvalidParameterError(f"Invalid device name '{requested}'. Use /dev/vdb../dev/vdz.")
            if requested in used:
                raise InvalidParameterError(f"Device '{requested}' is already in use.")
            return requested

        for slot in DEVICE_SLOTS:
            if slot not in used:
                return slot
        raise InvalidStateError("No free device slot (/dev/vdb../dev/vdz).")

    def _set_cached_state(self, volume: models.Volume, state: str):
        volume.state = state
        if volume.created_at is not None:
            save_best_effort(self.volume_repo.update, volume, f"state of volume '{volume.id}'")

    # ------------------------------------------------------------------
    # 공통
    # ------------------------------------------------------------------

    def _file_name(self, volume_id: str) -> str:
        return f"{volume_id}.{self.volume_format}"

    def _validate_size(self, size_gb) -> int:
        if not isinstance(size_gb, int) or isinstance(size_gb, bool) or size_gb <= 0:
            raise InvalidParameterError(f"Volume size must be a positive number of GB, got {size_gb!r}.")
        return size_gb

    def _require_active_pool(self, pool: str):
        try:
            pool_info = self.hypervisor.get_storage_pool(pool)
        except HypervisorError as e:
            raise StoragePoolUnavailableError(f"Storage pool '{pool}' is unavailable: {e}") from e
        if not pool_info.is_active:
            raise StoragePoolUnavailableError(f"Storage pool '{pool}' is not active (state: {pool_info.state}).")
