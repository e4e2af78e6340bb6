import logging
import os
import shlex
from typing import Callable, ContextManager, List, Optional

from vmplane.clients.errors import HypervisorError
from vmplane.clients.hypervisor import HypervisorClient
from vmplane.clients.node_connections import NodeConnectionCache, normalize_node_name
from vmplane.config import settings
from vmplane.database import models
from vmplane.repositories.exceptions import RepositoryError
from vmplane.repositories.interfaces import ITemplateRepository
from vmplane.repositories.sqlalchemy.sqlalchemy_template_repository import template_repository_scope
from vmplane.services.download_task_manager import (
    TEMPLATES_DIR,
    DestinationKey,
    DownloadTask,
    DownloadTaskManager,
)
from vmplane.services.exceptions import (
    DownloadTaskNotFoundError,
    InvalidParameterError,
    ResourceNotFoundError,
    StoragePoolUnavailableError,
    TemplateNotFoundError,
    UnderlyingToolError,
    VolumeNotFoundError,
)
from vmplane.services.types import RegisterTemplateRequest, RegisterTemplateResult
from vmplane.utils.idgen import TEMPLATE_PREFIX, generate_id

logger = logging.getLogger(__name__)

CANDIDATE_EXTENSIONS = ("", ".qcow2", ".raw", ".img")
_FORMATS = {".qcow2": "qcow2", ".raw": "raw", ".img": "raw"}


class TemplateService:
    def __init__(self, template_repo: ITemplateRepository, connections: NodeConnectionCache,
                 download_manager: DownloadTaskManager,
                 background_repo_scope: Callable[[], ContextManager[ITemplateRepository]] = template_repository_scope):
        """
        TemplateService를 초기화합니다.

        Args:
            template_repo: 템플릿 메타데이터 리포지토리.
            connections: 노드별 하이퍼바이저 연결 캐시.
            download_manager: URL 원본을 내려받을 다운로드 작업 관리자.
            background_repo_scope: 다운로드 완료 콜백에서 쓸 리포지토리를 여는 컨텍스트 매니저 팩토리.
                콜백은 다운로드 스레드에서 실행되므로 요청 스레드의 세션과 별도의 세션을 사용합니다.
        """
        self.template_repo = template_repo
        self.connections = connections
        self.download_manager = download_manager
        self.background_repo_scope = background_repo_scope

    def register_template(self, request: RegisterTemplateRequest) -> RegisterTemplateResult:
        """
        템플릿을 등록합니다.

        source_url이 있으면 (node, pool, volume_name) 목적지로 다운로드 작업을 만들고(이미 진행 중이면
        그 작업을 재사용), 다운로드가 끝난 뒤 콜백에서 등록합니다. source_url이 없으면 풀의
        _templates_ 디렉터리에 있는 파일로 즉시 등록합니다.

        Args:
            request: 등록 요청.

        Returns:
            동기 등록이면 template이, 비동기 등록이면 task가 채워진 결과.

        Raises:
            InvalidParameterError: 필수 값이 비었거나 알 수 없는 노드일 때.
            StoragePoolUnavailableError: 풀을 조회할 수 없을 때 (동기 등록).
            VolumeNotFoundError: _templates_ 디렉터리에 파일이 없을 때 (동기 등록).
        """
        for field in ("name", "pool_name", "volume_name"):
            if not getattr(request, field):
                raise InvalidParameterError(f"{field} is required.")
        if "/" in request.volume_name:
            raise InvalidParameterError(f"volume_name must be a file name, got '{request.volume_name}'.")

        node_name = normalize_node_name(request.node_name)
        client = self._client(node_name)

        if not request.source_url:
            template = self._register_from_volume(client, node_name, request, self.template_repo)
            return RegisterTemplateResult(template=template, is_async=False)

        destination = DestinationKey(node_name, request.pool_name, request.volume_name)
        task, is_new = self.download_manager.create_task(destination, request.source_url)
        if is_new:
            self.download_manager.start_download(
                task, client, on_complete=lambda done, error: self._on_download_complete(client, node_name, request, done, error)
            )
        else:
            logger.info(f"Download for {destination} already in progress as '{task.id}'; reusing it.")

        return RegisterTemplateResult(task=self.download_manager.get_task(task.id) or task, is_async=True)

    def _on_download_complete(self, client: HypervisorClient, node_name: str, request: RegisterTemplateRequest,
                              task: DownloadTask, error: Optional[Exception]):
        if error is not None:
            logger.error(f"Template '{request.name}' not registered: download task '{task.id}' failed: {error}")
            return
        try:
            with self.background_repo_scope() as template_repo:
                self._register_from_volume(client, node_name, request, template_repo)
        except (ResourceNotFoundError, UnderlyingToolError, RepositoryError) as e:
            logger.error(f"Template '{request.name}' registration after download '{task.id}' failed: {e}")

    def _register_from_volume(self, client: HypervisorClient, node_name: str,
                              request: RegisterTemplateRequest, template_repo: ITemplateRepository) -> models.Template:
        try:
            pool = client.get_storage_pool(request.pool_name)
        except HypervisorError as e:
            raise StoragePoolUnavailableError(f"Storage pool '{request.pool_name}' is unavailable: {e}") from e

        template_dir = os.path.join(pool.path, TEMPLATES_DIR)
        for extension in CANDIDATE_EXTENSIONS:
            path = os.path.join(template_dir, request.volume_name + extension)
            size_bytes = self._file_size(client, path)
            if size_bytes is not None:
                break
        else:
            raise VolumeNotFoundError(
                f"Template volume '{request.volume_name}' not found in {template_dir} on node '{node_name}'."
            )

        template = models.Template(
            id=generate_id(TEMPLATE_PREFIX),
            name=request.name,
            description=request.description,
            node_name=node_name,
            pool_name=request.pool_name,
            volume_name=os.path.basename(path),
            path=path,
            format=_FORMATS.get(os.path.splitext(path)[1], "qcow2"),
            size_bytes=size_bytes,
            source_url=request.source_url,
            os=request.os,
            features=request.features,
            tags=request.tags,
        )
        template_repo.create(template)
        logger.info(f"Template '{template.id}' ({template.name}) registered from {path}")
        return template

    def _file_size(self, client: HypervisorClient, path: str) -> Optional[int]:
        if not client.is_remote():
            return os.path.getsize(path) if os.path.isfile(path) else None
        quoted = shlex.quote(path)
        try:
            output = client.execute_remote_command(f"test -f {quoted} && stat -c %s {quoted}")
        except HypervisorError:
            return None
        try:
            return int(output.strip())
        except ValueError:
            return None

    def describe_template(self, template_id: str) -> models.Template:
        template = self.template_repo.find_by_id(template_id)
        if not template:
            raise TemplateNotFoundError(f"Template '{template_id}' not found.")
        return template

    def list_templates(self, node_name: Optional[str] = None, pool_name: Optional[str] = None) -> List[models.Template]:
        return self.template_repo.list_by_location(node_name, pool_name)

    def update_template(self, template_id: str, description: Optional[str] = None, os_info: Optional[dict] = None,
                        features: Optional[dict] = None, tags: Optional[dict] = None) -> models.Template:
        """주어진 메타데이터 항목만 바꿉니다. 디스크 파일은 건드리지 않습니다."""
        template = self.describe_template(template_id)
        if description is not None:
            template.description = description
        if os_info is not None:
            template.os = os_info
        if features is not None:
            template.features = features
        if tags is not None:
            template.tags = tags
        return self.template_repo.update(template)

    def delete_template(self, template_id: str, delete_volume: bool = False) -> bool:
        """
        템플릿 레코드를 삭제합니다. delete_volume이 True이면 기반 디스크 파일도 지웁니다.

        Raises:
            TemplateNotFoundError: 템플릿이 없을 때.
            UnderlyingToolError: 디스크 파일 삭제에 실패했을 때. 이때 레코드는 남습니다.
        """
        template = self.describe_template(template_id)
        if delete_volume:
            self._delete_file(template)
        self.template_repo.soft_delete(template)
        logger.info(f"Template '{template_id}' deleted (volume {'deleted' if delete_volume else 'kept'}).")
        return True

    def _delete_file(self, template: models.Template):
        client = self._client(template.node_name)
        try:
            if client.is_remote():
                client.execute_remote_command(f"rm -f {shlex.quote(template.path)}")
            elif os.path.exists(template.path):
                os.remove(template.path)
            else:
                logger.warning(f"Template file {template.path} already gone.")
        except (HypervisorError, OSError) as e:
            raise UnderlyingToolError(f"Failed to delete template file {template.path}: {e}") from e

        try:
            client.refresh_storage_pool(template.pool_name)
        except HypervisorError as e:
            logger.warning(f"Failed to refresh pool '{template.pool_name}' after deleting {template.path}: {e}")

    def get_download_task(self, task_id: str) -> DownloadTask:
        task = self.download_manager.get_task(task_id)
        if task is None:
            raise DownloadTaskNotFoundError(f"Download task '{task_id}' not found.")
        return task

    def list_download_tasks(self, active_only: bool = False) -> List[DownloadTask]:
        if active_only:
            return self.download_manager.list_active()
        return self.download_manager.list_tasks()

    def cleanup_download_tasks(self, ttl_seconds: float = settings.download_task_ttl) -> int:
        return self.download_manager.cleanup_older_than(ttl_seconds)

    def _client(self, node_name: str) -> HypervisorClient:
        try:
            return self.connections.get(node_name)
        except KeyError as e:
            raise InvalidParameterError(f"Unknown node '{node_name}'.") from e
        except HypervisorError as e:
            raise UnderlyingToolError(f"Failed to connect to node '{node_name}': {e}") from e
