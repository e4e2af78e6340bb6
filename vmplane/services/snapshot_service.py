import logging
import os
from typing import List, Optional

from vmplane.clients.disk_tool import DiskToolClient
from vmplane.clients.errors import HypervisorError, HypervisorNotFoundError, ToolError
from vmplane.clients.hypervisor import HypervisorClient
from vmplane.database import models
from vmplane.repositories.interfaces import ISnapshotRepository
from vmplane.services.exceptions import (
    SnapshotCreationError,
    SnapshotNotFoundError,
    SnapshotNotReadyError,
    UnderlyingToolError,
)
from vmplane.services.persistence import save_best_effort
from vmplane.services.storage_service import StorageService
from vmplane.utils.idgen import SNAPSHOT_PREFIX, generate_id

logger = logging.getLogger(__name__)

SNAPSHOT_PENDING = "pending"
SNAPSHOT_COMPLETED = "completed"
SNAPSHOT_FAILED = "failed"


class SnapshotService:
    """볼륨 스냅샷을 독립된 qcow2 파일로 만들고 관리합니다."""

    def __init__(self, hypervisor: HypervisorClient, disk_tool: DiskToolClient,
                 snapshot_repo: ISnapshotRepository, storage_service: StorageService):
        self.hypervisor = hypervisor
        self.disk_tool = disk_tool
        self.snapshot_repo = snapshot_repo
        self.storage_service = storage_service

    def get_snapshot(self, snapshot_id: str) -> models.Snapshot:
        snapshot = self.snapshot_repo.find_by_id(snapshot_id)
        if not snapshot:
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found.")
        return snapshot

    def describe_snapshots(self, volume_id: Optional[str] = None) -> List[models.Snapshot]:
        if volume_id:
            return self.snapshot_repo.list_by_volume_id(volume_id)
        return self.snapshot_repo.list()

    def create_snapshot(self, volume_id: str, description: Optional[str] = None) -> models.Snapshot:
        """
        볼륨의 현재 내용을 스냅샷 파일로 내보냅니다.

        볼륨에 qemu-img 내부 스냅샷 태그를 만들고, 그 시점을 <snap id>.qcow2로 변환한 뒤
        태그를 지웁니다. 레코드는 pending으로 저장된 뒤 completed 또는 failed가 됩니다.

        Args:
            volume_id: 원본 볼륨 ID.
            description: 설명.

        Returns:
            completed 상태의 스냅샷 레코드.

        Raises:
            VolumeNotFoundError: 볼륨이 없을 때.
            SnapshotCreationError: 디스크 도구 또는 하이퍼바이저 작업이 실패했을 때.
                중간에 만든 파일과 태그는 정리됩니다.
        """
        volume = self.storage_service.get_volume(volume_id)
        snapshot = models.Snapshot(
            id=generate_id(SNAPSHOT_PREFIX),
            volume_id=volume.id,
            state=SNAPSHOT_PENDING,
            size_gb=volume.size_gb,
            pool=volume.pool,
            description=description,
        )
        self.snapshot_repo.create(snapshot)

        try:
            self._export(volume.path, snapshot, tag=snapshot.id)
        except (ToolError, UnderlyingToolError) as e:
            self._mark_failed(snapshot)
            raise SnapshotCreationError(f"Failed to snapshot volume '{volume_id}'. Original error: {e}") from e

        logger.info(f"Snapshot '{snapshot.id}' of volume '{volume_id}' completed at {snapshot.path}")
        return snapshot

    def copy_snapshot(self, snapshot_id: str, description: Optional[str] = None) -> models.Snapshot:
        """
        completed 상태의 스냅샷을 새 스냅샷으로 복사합니다.

        Raises:
            SnapshotNotFoundError: 원본이 없을 때.
            SnapshotNotReadyError: 원본이 completed가 아닐 때.
            SnapshotCreationError: 복사에 실패했을 때.
        """
        source = self.get_snapshot(snapshot_id)
        if source.state != SNAPSHOT_COMPLETED:
            raise SnapshotNotReadyError(f"Snapshot '{snapshot_id}' is '{source.state}', not 'completed'.")

        copy = models.Snapshot(
            id=generate_id(SNAPSHOT_PREFIX),
            volume_id=source.volume_id,
            state=SNAPSHOT_PENDING,
            size_gb=source.size_gb,
            pool=source.pool,
            description=description if description is not None else source.description,
        )
        self.snapshot_repo.create(copy)

        try:
            self._export(source.path, copy, tag=None)
        except (ToolError, UnderlyingToolError) as e:
            self._mark_failed(copy)
            raise SnapshotCreationError(f"Failed to copy snapshot '{snapshot_id}'. Original error: {e}") from e

        logger.info(f"Snapshot '{snapshot_id}' copied to '{copy.id}'")
        return copy

    def delete_snapshot(self, snapshot_id: str) -> bool:
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot.path:
            try:
                self.hypervisor.delete_volume(snapshot.pool, os.path.basename(snapshot.path))
            except HypervisorNotFoundError:
                logger.warning(f"Snapshot file for '{snapshot_id}' already gone.")
            except HypervisorError as e:
                raise UnderlyingToolError(f"Failed to delete snapshot '{snapshot_id}': {e}") from e
        self.snapshot_repo.soft_delete(snapshot)
        logger.info(f"Snapshot '{snapshot_id}' deleted.")
        return True

    def _export(self, source_path: str, snapshot: models.Snapshot, tag: Optional[str]):
        try:
            pool_path = self.hypervisor.get_storage_pool(snapshot.pool).path
        except HypervisorError as e:
            raise UnderlyingToolError(f"Storage pool '{snapshot.pool}' is unavailable: {e}") from e
        target_name = f"{snapshot.id}.qcow2"
        target_path = os.path.join(pool_path, target_name)

        if tag:
            self.disk_tool.snapshot_create(source_path, tag)
        try:
            self.disk_tool.convert("qcow2", "qcow2", source_path, target_path, snapshot_name=tag)
            self.hypervisor.refresh_storage_pool(snapshot.pool)
        except ToolError:
            self._remove_partial(snapshot.pool, target_name)
            raise
        finally:
            if tag:
                self._drop_tag(source_path, tag)

        snapshot.path = target_path
        snapshot.state = SNAPSHOT_COMPLETED
        save_best_effort(self.snapshot_repo.update, snapshot, f"snapshot '{snapshot.id}'")

    def _drop_tag(self, path: str, tag: str):
        try:
            self.disk_tool.snapshot_delete(path, tag)
        except ToolError as e:
            logger.warning(f"Rollback Warning: Failed to remove internal snapshot '{tag}' from {path}: {e}")

    def _remove_partial(self, pool: str, name: str):
        try:
            self.hypervisor.refresh_storage_pool(pool)
            self.hypervisor.delete_volume(pool, name)
        except HypervisorNotFoundError:
            pass
        except HypervisorError as e:
            logger.warning(f"Rollback Warning: Failed to delete partial snapshot file '{name}': {e}")

    def _mark_failed(self, snapshot: models.Snapshot):
        snapshot.state = SNAPSHOT_FAILED
        save_best_effort(self.snapshot_repo.update, snapshot, f"failed state of snapshot '{snapshot.id}'")
