# tests/services/test_download_task_manager.py
import threading

import httpx
import pytest
from unittest.mock import MagicMock, patch

from vmplane.services.download_task_manager import (
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_RUNNING,
    DestinationKey,
    DownloadTaskManager,
    build_remote_download_command,
    download_to_pool,
)

DEST = DestinationKey("local", "default", "ubuntu.qcow2")
URL = "https://cloud-images.example.com/jammy.img"

# ===================================================================
#  Fixture 설정
# ===================================================================

class FakeClock:
    """수동으로 시간을 움직일 수 있는 시계."""
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture
def mock_downloader() -> MagicMock:
    return MagicMock(return_value="/var/lib/libvirt/images/_templates_/ubuntu.qcow2")

@pytest.fixture
def manager(clock, mock_downloader) -> DownloadTaskManager:
    """다운로드를 호출한 스레드에서 바로 실행하는 관리자."""
    return DownloadTaskManager(run_async=lambda work: work(), downloader=mock_downloader, clock=clock)

# ===================================================================
#  create_task 테스트 스위트
# ===================================================================
class TestCreateTask:

    def test_same_destination_reuses_active_task(self, manager):
        """같은 목적지에 진행 중인 작업이 있으면 새 작업을 만들지 않습니다."""
        # === Act ===
        first, first_is_new = manager.create_task(DEST, URL)
        second, second_is_new = manager.create_task(DEST, "https://mirror.example.com/other.img")

        # === Assert ===
        assert first_is_new is True
        assert second_is_new is False
        assert second.id == first.id
        assert second.url == URL
        assert first.status == TASK_PENDING
        assert len(manager.list_tasks()) == 1

    def test_different_destinations_get_separate_tasks(self, manager):
        first, _ = manager.create_task(DEST, URL)
        other, is_new = manager.create_task(DestinationKey("local", "default", "debian.qcow2"), URL)

        assert is_new is True
        assert other.id != first.id

    @pytest.mark.parametrize("final_status", [TASK_COMPLETED, TASK_FAILED])
    def test_finished_task_is_replaced(self, manager, final_status):
        """끝난 작업의 목적지에 다시 요청하면 새 작업을 만듭니다."""
        # === Arrange ===
        old, _ = manager.create_task(DEST, URL)
        manager.update_status(old.id, final_status)

        # === Act ===
        new, is_new = manager.create_task(DEST, URL)

        # === Assert ===
        assert is_new is True
        assert new.id != old.id
        assert manager.get_task(old.id) is None
        assert manager.get_task_by_destination(DEST).id == new.id

    def test_returned_tasks_are_copies(self, manager):
        task, _ = manager.create_task(DEST, URL)

        task.status = TASK_FAILED

        assert manager.get_task(task.id).status == TASK_PENDING

    def test_concurrent_requests_create_one_task(self, clock, mock_downloader):
        """여러 스레드가 동시에 같은 목적지를 요청해도 작업은 하나만 만들어집니다."""
        # === Arrange ===
        manager = DownloadTaskManager(run_async=lambda work: None, downloader=mock_downloader, clock=clock)
        barrier = threading.Barrier(8)
        results = []

        def request():
            barrier.wait()
            results.append(manager.create_task(DEST, URL))

        # === Act ===
        threads = [threading.Thread(target=request) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # === Assert ===
        assert sum(1 for _, is_new in results if is_new) == 1
        assert len({task.id for task, _ in results}) == 1


# ===================================================================
#  상태 갱신 / 정리 테스트 스위트
# ===================================================================
class TestStatusAndCleanup:

    def test_update_status_records_error_and_time(self, manager, clock):
        task, _ = manager.create_task(DEST, URL)
        clock.advance(30)

        updated = manager.update_status(task.id, TASK_FAILED, "404 Not Found")

        assert updated.status == TASK_FAILED
        assert updated.error == "404 Not Found"
        assert updated.updated_at == task.created_at + 30

    def test_update_unknown_task_returns_none(self, manager):
        assert manager.update_status("task-missing", TASK_RUNNING) is None

    def test_cleanup_removes_only_old_finished_tasks(self, manager, clock):
        # === Arrange ===
        done, _ = manager.create_task(DEST, URL)
        manager.update_status(done.id, TASK_COMPLETED)
        active, _ = manager.create_task(DestinationKey("local", "default", "b.qcow2"), URL)
        clock.advance(7200)
        recent, _ = manager.create_task(DestinationKey("local", "default", "c.qcow2"), URL)
        manager.update_status(recent.id, TASK_FAILED, "timeout")

        # === Act ===
        removed = manager.cleanup_older_than(3600)

        # === Assert ===
        assert removed == 1
        assert manager.get_task(done.id) is None
        assert manager.get_task_by_destination(DEST) is None
        assert manager.get_task(active.id) is not None
        assert manager.get_task(recent.id) is not None
        assert [t.id for t in manager.list_active()] == [active.id]

    def test_remove_task(self, manager):
        task, _ = manager.create_task(DEST, URL)

        assert manager.remove_task(task.id) is True
        assert manager.remove_task(task.id) is False
        assert manager.get_task_by_destination(DEST) is None


# ===================================================================
#  start_download 테스트 스위트
# ===================================================================
class TestStartDownload:

    def test_successful_download_completes_and_calls_back(self, manager, mock_downloader):
        # === Arrange ===
        client = MagicMock()
        task, _ = manager.create_task(DEST, URL)
        on_complete = MagicMock()

        # === Act ===
        manager.start_download(task, client, on_complete)

        # === Assert ===
        assert manager.get_task(task.id).status == TASK_COMPLETED
        downloaded_task = mock_downloader.call_args[0][1]
        assert mock_downloader.call_args[0][0] is client
        assert downloaded_task.status == TASK_RUNNING
        final, error = on_complete.call_args[0]
        assert final.status == TASK_COMPLETED
        assert error is None

    def test_failed_download_is_recorded(self, manager, mock_downloader):
        """다운로드 실패는 예외로 전파되지 않고 작업 상태와 콜백으로 전달됩니다."""
        # === Arrange ===
        mock_downloader.side_effect = RuntimeError("connection reset")
        task, _ = manager.create_task(DEST, URL)
        on_complete = MagicMock()

        # === Act ===
        manager.start_download(task, MagicMock(), on_complete)

        # === Assert ===
        stored = manager.get_task(task.id)
        assert stored.status == TASK_FAILED
        assert stored.error == "connection reset"
        final, error = on_complete.call_args[0]
        assert final.status == TASK_FAILED
        assert isinstance(error, RuntimeError)

    def test_callback_failure_does_not_change_task(self, manager):
        task, _ = manager.create_task(DEST, URL)

        manager.start_download(task, MagicMock(), MagicMock(side_effect=ValueError("bad callback")))

        assert manager.get_task(task.id).status == TASK_COMPLETED

    def test_removed_task_is_not_downloaded(self, manager, mock_downloader):
        task, _ = manager.create_task(DEST, URL)
        manager.remove_task(task.id)

        manager.start_download(task, MagicMock())

        mock_downloader.assert_not_called()


# ===================================================================
#  download_to_pool 테스트 스위트
# ===================================================================
class TestDownloadToPool:

    def test_remote_node_uses_remote_command(self, fake_hypervisor):
        # === Arrange ===
        fake_hypervisor.remote = True
        task, _ = DownloadTaskManager(run_async=lambda work: None).create_task(DEST, URL)

        # === Act ===
        target = download_to_pool(fake_hypervisor, task)

        # === Assert ===
        assert target == "/var/lib/libvirt/images/_templates_/ubuntu.qcow2"
        (command,), = fake_hypervisor.called("execute_remote_command")
        assert command == build_remote_download_command(URL, target)
        assert fake_hypervisor.called("refresh_storage_pool") == [("default",)]

    @patch("vmplane.services.download_task_manager.httpx.stream")
    def test_local_node_streams_into_templates_dir(self, mock_stream, fake_hypervisor, tmp_path):
        """로컬 노드는 httpx로 스트리밍해 _templates_ 디렉터리에 파일을 씁니다."""
        # === Arrange ===
        fake_hypervisor.add_pool("default", str(tmp_path))
        response = MagicMock()
        response.iter_bytes.return_value = [b"qcow", b"data"]
        mock_stream.return_value.__enter__.return_value = response
        task, _ = DownloadTaskManager(run_async=lambda work: None).create_task(DEST, URL)

        # === Act ===
        target = download_to_pool(fake_hypervisor, task, timeout=60)

        # === Assert ===
        assert target == str(tmp_path / "_templates_" / "ubuntu.qcow2")
        assert (tmp_path / "_templates_" / "ubuntu.qcow2").read_bytes() == b"qcowdata"
        assert not (tmp_path / "_templates_" / "ubuntu.qcow2.part").exists()
        mock_stream.assert_called_once()
        assert mock_stream.call_args[0] == ("GET", URL)

    @patch("vmplane.services.download_task_manager.httpx.stream")
    def test_local_failure_leaves_no_partial_file(self, mock_stream, fake_hypervisor, tmp_path):
        fake_hypervisor.add_pool("default", str(tmp_path))
        response = MagicMock()
        response.iter_bytes.side_effect = httpx.ReadError("connection reset")
        mock_stream.return_value.__enter__.return_value = response
        task, _ = DownloadTaskManager(run_async=lambda work: None).create_task(DEST, URL)

        with pytest.raises(httpx.ReadError):
            download_to_pool(fake_hypervisor, task)

        assert list((tmp_path / "_templates_").iterdir()) == []
        assert fake_hypervisor.called("refresh_storage_pool") == []


def test_remote_download_command_quotes_arguments():
    command = build_remote_download_command("https://example.com/a b.img", "/pool/_templates_/x.qcow2")

    assert command.startswith("mkdir -p /pool/_templates_ && ")
    assert "wget -q -O /pool/_templates_/x.qcow2.part 'https://example.com/a b.img'" in command
    assert "curl -fsSL -o /pool/_templates_/x.qcow2.part 'https://example.com/a b.img'" in command

def test_remote_download_command_only_publishes_complete_files():
    """원격 다운로드는 .part 파일에 받은 뒤 성공했을 때만 최종 경로로 옮깁니다."""
    command = build_remote_download_command("https://example.com/x.img", "/pool/_templates_/x.qcow2")

    assert "-O /pool/_templates_/x.qcow2 " not in command
    assert "then mv -f /pool/_templates_/x.qcow2.part /pool/_templates_/x.qcow2; " in command
    assert command.endswith("else rm -f /pool/_templates_/x.qcow2.part; false; fi")
