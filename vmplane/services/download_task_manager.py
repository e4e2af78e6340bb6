import dataclasses
import logging
import os
import shlex
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import httpx

from vmplane.clients.hypervisor import HypervisorClient
from vmplane.config import settings
from vmplane.utils.idgen import TASK_PREFIX, generate_id

logger = logging.getLogger(__name__)

TASK_PENDING = "pending"
TASK_RUNNING = "running"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"
TERMINAL_STATUSES = {TASK_COMPLETED, TASK_FAILED}

# 스토리지 풀 안에서 템플릿 기반 디스크를 두는 디렉터리
TEMPLATES_DIR = "_templates_"

CHUNK_SIZE = 1024 * 1024


class DestinationKey(NamedTuple):
    node_name: str
    pool_name: str
    volume_name: str

    def __str__(self):
        return f"{self.node_name}:{self.pool_name}:{self.volume_name}"


@dataclass
class DownloadTask:
    id: str
    destination: DestinationKey
    url: str
    status: str = TASK_PENDING
    error: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


CompletionCallback = Callable[[DownloadTask, Optional[Exception]], None]
Downloader = Callable[[HypervisorClient, DownloadTask], str]


def _run_in_thread(work: Callable[[], None]):
    threading.Thread(target=work, daemon=True).start()


def template_path(pool_path: str, volume_name: str) -> str:
    return os.path.join(pool_path, TEMPLATES_DIR, volume_name)


def build_remote_download_command(url: str, target: str) -> str:
    """
    원격 노드에서 wget(없으면 curl)으로 내려받는 셸 명령을 만듭니다.

    <target>.part에 받은 뒤 성공하면 이름을 바꾸고, 실패하면 부분 파일을 지우고 0이 아닌 값으로 끝납니다.
    """
    partial = f"{target}.part"
    q_url, q_target, q_partial = shlex.quote(url), shlex.quote(target), shlex.quote(partial)
    return (
        f"mkdir -p {shlex.quote(os.path.dirname(target))} && "
        f"if (command -v wget >/dev/null 2>&1 && wget -q -O {q_partial} {q_url} || curl -fsSL -o {q_partial} {q_url}); "
        f"then mv -f {q_partial} {q_target}; "
        f"else rm -f {q_partial}; false; fi"
    )


def download_to_pool(client: HypervisorClient, task: DownloadTask, timeout: float = settings.download_timeout) -> str:
    """
    작업의 URL을 풀의 _templates_ 디렉터리에 내려받고 풀을 새로 고칩니다.

    로컬 노드는 httpx로 스트리밍하여 임시 파일에 쓴 뒤 이름을 바꾸고,
    원격 노드는 원격 실행 채널로 wget/curl을 실행합니다.

    Returns:
        내려받은 파일의 경로.
    """
    pool = client.get_storage_pool(task.destination.pool_name)
    target = template_path(pool.path, task.destination.volume_name)

    if client.is_remote():
        client.execute_remote_command(build_remote_download_command(task.url, target))
    else:
        os.makedirs(os.path.dirname(target), exist_ok=True)
        partial = f"{target}.part"
        try:
            with httpx.stream("GET", task.url, follow_redirects=True, timeout=httpx.Timeout(timeout)) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
            os.replace(partial, target)
        finally:
            if os.path.exists(partial):
                os.remove(partial)

    client.refresh_storage_pool(task.destination.pool_name)
    logger.info(f"Downloaded {task.url} to {target}")
    return target


class DownloadTaskManager:
    """
    백그라운드 다운로드 작업을 목적지(node, pool, volume) 단위로 중복 없이 관리합니다.

    두 개의 맵(작업 ID -> 작업, 목적지 -> 작업 ID)은 하나의 락으로 보호하며,
    밖으로 내보내는 작업은 항상 복사본입니다. 다운로드는 락 밖에서 run_async로 실행됩니다.
    """

    def __init__(self, run_async: Callable[[Callable[[], None]], None] = _run_in_thread,
                 downloader: Downloader = download_to_pool,
                 clock: Callable[[], float] = time.time):
        self.run_async = run_async
        self.downloader = downloader
        self.clock = clock
        self._tasks: Dict[str, DownloadTask] = {}
        self._tasks_by_destination: Dict[DestinationKey, str] = {}
        self._lock = threading.Lock()

    def create_task(self, destination: DestinationKey, url: str) -> Tuple[DownloadTask, bool]:
        """
        목적지에 대한 다운로드 작업을 만듭니다.

        같은 목적지에 pending/running 작업이 있으면 그 작업을 그대로 반환하고(is_new=False),
        끝난 작업이 있으면 버리고 새로 만듭니다.

        Returns:
            (작업 복사본, 새로 만들었는지 여부)
        """
        with self._lock:
            existing_id = self._tasks_by_destination.get(destination)
            if existing_id is not None:
                existing = self._tasks.get(existing_id)
                if existing is not None and not existing.is_terminal:
                    return dataclasses.replace(existing), False
                self._tasks.pop(existing_id, None)

            now = self.clock()
            task = DownloadTask(
                id=generate_id(TASK_PREFIX),
                destination=destination,
                url=url,
                created_at=now,
                updated_at=now,
            )
            self._tasks[task.id] = task
            self._tasks_by_destination[destination] = task.id
            created = dataclasses.replace(task)

        logger.info(f"Download task '{created.id}' created for {destination} from {url}")
        return created, True

    def get_task(self, task_id: str) -> Optional[DownloadTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return dataclasses.replace(task) if task else None

    def get_task_by_destination(self, destination: DestinationKey) -> Optional[DownloadTask]:
        with self._lock:
            task_id = self._tasks_by_destination.get(destination)
            task = self._tasks.get(task_id) if task_id else None
            return dataclasses.replace(task) if task else None

    def list_tasks(self) -> List[DownloadTask]:
        with self._lock:
            return [dataclasses.replace(task) for task in self._tasks.values()]

    def list_active(self) -> List[DownloadTask]:
        with self._lock:
            return [dataclasses.replace(task) for task in self._tasks.values() if not task.is_terminal]

    def update_status(self, task_id: str, status: str, error: Optional[str] = None) -> Optional[DownloadTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            task.status = status
            task.error = error
            task.updated_at = self.clock()
            return dataclasses.replace(task)

    def remove_task(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                return False
            if self._tasks_by_destination.get(task.destination) == task_id:
                del self._tasks_by_destination[task.destination]
            return True

    def cleanup_older_than(self, ttl_seconds: float) -> int:
        """마지막 갱신 후 ttl_seconds가 지난 완료/실패 작업만 제거합니다. 제거한 개수를 반환합니다."""
        cutoff = self.clock() - ttl_seconds
        with self._lock:
            expired = [
                task for task in self._tasks.values()
                if task.is_terminal and task.updated_at < cutoff
            ]
            for task in expired:
                del self._tasks[task.id]
                if self._tasks_by_destination.get(task.destination) == task.id:
                    del self._tasks_by_destination[task.destination]
        if expired:
            logger.debug(f"Removed {len(expired)} finished download task(s)")
        return len(expired)

    def start_download(self, task: DownloadTask, client: HypervisorClient,
                       on_complete: Optional[CompletionCallback] = None):
        """
        작업을 run_async로 실행합니다.

        상태를 running으로 바꾼 뒤 내려받고, completed/failed로 바꾼 다음
        on_complete(최종 작업 복사본, 오류)를 호출합니다. 콜백은 락 밖에서 실행됩니다.
        """
        self.run_async(lambda: self._execute(task.id, client, on_complete))

    def _execute(self, task_id: str, client: HypervisorClient, on_complete: Optional[CompletionCallback]):
        task = self.update_status(task_id, TASK_RUNNING)
        if task is None:
            logger.warning(f"Download task '{task_id}' disappeared before it started")
            return

        error = None
        try:
            self.downloader(client, task)
            final = self.update_status(task_id, TASK_COMPLETED)
        except Exception as e:
            # 백그라운드 작업이므로 어떤 실패든 작업 상태로 남긴다
            error = e
            logger.error(f"Download task '{task_id}' from {task.url} failed: {e}")
            final = self.update_status(task_id, TASK_FAILED, str(e))

        if on_complete is None:
            return
        try:
            on_complete(final or task, error)
        except Exception:
            logger.exception(f"Completion callback of download task '{task_id}' failed")
