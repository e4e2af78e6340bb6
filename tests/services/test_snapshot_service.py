# tests/services/test_snapshot_service.py
import pytest
from unittest.mock import MagicMock, call

from vmplane.clients.disk_tool import DiskToolClient
from vmplane.clients.errors import DiskToolError
from vmplane.database import models
from vmplane.repositories.interfaces import ISnapshotRepository
from vmplane.services.exceptions import SnapshotCreationError, SnapshotNotReadyError, VolumeNotFoundError
from vmplane.services.snapshot_service import SnapshotService
from vmplane.services.storage_service import StorageService

VOLUME = models.Volume(id="vol-1", pool="default", path="/var/lib/libvirt/images/vol-1.qcow2",
                       size_gb=20, format="qcow2", state="available")

@pytest.fixture
def mock_disk_tool() -> MagicMock:
    return MagicMock(spec=DiskToolClient)

@pytest.fixture
def mock_snapshot_repo() -> MagicMock:
    return MagicMock(spec=ISnapshotRepository)

@pytest.fixture
def mock_storage_service() -> MagicMock:
    service = MagicMock(spec=StorageService)
    service.get_volume.return_value = VOLUME
    return service

@pytest.fixture
def snapshot_service(fake_hypervisor, mock_disk_tool, mock_snapshot_repo, mock_storage_service) -> SnapshotService:
    return SnapshotService(fake_hypervisor, mock_disk_tool, mock_snapshot_repo, mock_storage_service)


class TestCreateSnapshot:

    def test_exports_tagged_point_in_time(self, snapshot_service, mock_disk_tool, mock_snapshot_repo,
                                          fake_hypervisor):
        """내부 스냅샷 태그를 만들어 그 시점을 별도 파일로 내보낸 뒤 태그를 지웁니다."""
        # === Act ===
        snapshot = snapshot_service.create_snapshot("vol-1", description="before upgrade")

        # === Assert ===
        assert snapshot.state == "completed"
        assert snapshot.size_gb == 20
        assert snapshot.path == f"/var/lib/libvirt/images/{snapshot.id}.qcow2"
        assert mock_disk_tool.mock_calls == [
            call.snapshot_create(VOLUME.path, snapshot.id),
            call.convert("qcow2", "qcow2", VOLUME.path, snapshot.path, snapshot_name=snapshot.id),
            call.snapshot_delete(VOLUME.path, snapshot.id),
        ]
        mock_snapshot_repo.create.assert_called_once_with(snapshot)
        mock_snapshot_repo.update.assert_called_with(snapshot)
        assert fake_hypervisor.called("refresh_storage_pool") == [("default",)]

    def test_convert_failure_marks_failed_and_cleans_up(self, snapshot_service, mock_disk_tool, fake_hypervisor):
        # === Arrange ===
        mock_disk_tool.convert.side_effect = DiskToolError("No space left on device")
        created = []
        snapshot_service.snapshot_repo.create.side_effect = created.append

        # === Act & Assert ===
        with pytest.raises(SnapshotCreationError):
            snapshot_service.create_snapshot("vol-1")

        # 검증: 기록은 failed, 태그는 지워졌고, 부분 파일 삭제를 시도함
        snapshot = created[0]
        assert snapshot.state == "failed"
        mock_disk_tool.snapshot_delete.assert_called_once_with(VOLUME.path, snapshot.id)
        assert fake_hypervisor.called("delete_volume") == [("default", f"{snapshot.id}.qcow2")]

    def test_missing_volume(self, snapshot_service, mock_storage_service, mock_snapshot_repo):
        mock_storage_service.get_volume.side_effect = VolumeNotFoundError("Volume 'vol-x' not found.")

        with pytest.raises(VolumeNotFoundError):
            snapshot_service.create_snapshot("vol-x")
        mock_snapshot_repo.create.assert_not_called()


class TestCopyAndDelete:

    def test_copy_requires_completed_source(self, snapshot_service, mock_snapshot_repo):
        mock_snapshot_repo.find_by_id.return_value = models.Snapshot(
            id="snap-1", volume_id="vol-1", state="pending", size_gb=20, pool="default",
        )

        with pytest.raises(SnapshotNotReadyError):
            snapshot_service.copy_snapshot("snap-1")

    def test_copy_converts_without_tag(self, snapshot_service, mock_snapshot_repo, mock_disk_tool):
        # === Arrange ===
        mock_snapshot_repo.find_by_id.return_value = models.Snapshot(
            id="snap-1", volume_id="vol-1", state="completed", size_gb=20, pool="default",
            path="/var/lib/libvirt/images/snap-1.qcow2", description="nightly",
        )

        # === Act ===
        copy = snapshot_service.copy_snapshot("snap-1")

        # === Assert ===
        assert copy.id != "snap-1"
        assert copy.state == "completed"
        assert copy.description == "nightly"
        mock_disk_tool.convert.assert_called_once_with(
            "qcow2", "qcow2", "/var/lib/libvirt/images/snap-1.qcow2", copy.path, snapshot_name=None,
        )
        mock_disk_tool.snapshot_create.assert_not_called()

    def test_delete_removes_file_and_record(self, snapshot_service, mock_snapshot_repo, fake_hypervisor):
        # === Arrange ===
        fake_hypervisor.add_volume("default", "snap-1.qcow2", 20)
        snapshot = models.Snapshot(id="snap-1", volume_id="vol-1", state="completed", size_gb=20,
                                   pool="default", path="/var/lib/libvirt/images/snap-1.qcow2")
        mock_snapshot_repo.find_by_id.return_value = snapshot

        # === Act ===
        snapshot_service.delete_snapshot("snap-1")

        # === Assert ===
        assert ("default", "snap-1.qcow2") not in fake_hypervisor.volumes
        mock_snapshot_repo.soft_delete.assert_called_once_with(snapshot)

    def test_describe_by_volume(self, snapshot_service, mock_snapshot_repo):
        snapshot_service.describe_snapshots("vol-1")

        mock_snapshot_repo.list_by_volume_id.assert_called_once_with("vol-1")
