import json
import logging
import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from vmplane.clients.errors import GuestCustomizeError, HypervisorError
from vmplane.clients.guest_customize import GuestCustomizeClient, build_password_args, build_remote_reset_command
from vmplane.clients.hypervisor import HypervisorClient
from vmplane.config import settings
from vmplane.services.compute_service import STATE_RUNNING, STATE_STOPPED, ComputeService
from vmplane.services.exceptions import (
    CapabilityUnavailableError,
    InvalidParameterError,
    NoDiskFoundError,
    PasswordResetError,
)
from vmplane.services.types import ResetPasswordResult

logger = logging.getLogger(__name__)


class ResetMethod(str, Enum):
    GUEST_AGENT = "guest-agent"
    LOCAL_OFFLINE = "local-offline"
    REMOTE_OFFLINE = "remote-offline"


def choose_strategy(running: bool, agent_available: bool, is_remote: bool) -> ResetMethod:
    """
    인스턴스 상태와 노드 위치로 비밀번호 변경 방법을 고릅니다.

    실행 중이고 게스트 에이전트가 응답하면 에이전트를, 그 밖에는 디스크 오프라인 수정을
    사용합니다. 오프라인 수정은 원격 노드이면 원격 실행 채널로, 아니면 로컬 도구로 수행합니다.
    """
    if running and agent_available:
        return ResetMethod.GUEST_AGENT
    return ResetMethod.REMOTE_OFFLINE if is_remote else ResetMethod.LOCAL_OFFLINE


def build_chpasswd_command(username: str, password: str) -> str:
    return f"printf '%s\\n' {shlex.quote(f'{username}:{password}')} | chpasswd"


@dataclass
class ResetTarget:
    instance_id: str
    domain_name: str
    hypervisor: HypervisorClient
    disk_path: Optional[str] = None


class PasswordResetStrategy(ABC):
    method: ResetMethod

    @abstractmethod
    def reset(self, target: ResetTarget, users: Dict[str, str]) -> None:
        """
        사용자 비밀번호를 변경합니다.

        Raises:
            PasswordResetError: 한 사용자라도 실패하면 그 사용자의 오류로 중단합니다.
        """
        pass


class GuestAgentStrategy(PasswordResetStrategy):
    """실행 중인 게스트 안에서 qemu-guest-agent의 guest-exec로 chpasswd를 실행합니다."""

    method = ResetMethod.GUEST_AGENT

    def __init__(self, timeout: int = settings.guest_agent_timeout):
        self.timeout = timeout

    def reset(self, target, users):
        for username, password in users.items():
            command = json.dumps({
                "execute": "guest-exec",
                "arguments": {"path": "/bin/sh", "arg": ["-c", build_chpasswd_command(username, password)]},
            })
            try:
                raw = target.hypervisor.guest_agent_command(target.domain_name, command, self.timeout)
            except HypervisorError as e:
                raise PasswordResetError(f"Guest agent failed to reset password for '{username}': {e}") from e

            try:
                response = json.loads(raw) if raw else {}
            except ValueError:
                logger.warning(f"Unparseable guest agent reply for '{username}' on '{target.domain_name}': {raw!r}")
                response = {}
            error = response.get("error") if isinstance(response, dict) else None
            if error:
                desc = error.get("desc", error) if isinstance(error, dict) else error
                raise PasswordResetError(f"Guest agent error for '{username}': {desc}")

            logger.info(f"Password for '{username}' on '{target.instance_id}' reset via guest agent")


class LocalOfflineStrategy(PasswordResetStrategy):
    """정지된 인스턴스의 디스크를 로컬 virt-customize로 수정합니다."""

    method = ResetMethod.LOCAL_OFFLINE

    def __init__(self, customize_client: GuestCustomizeClient):
        self.customize_client = customize_client

    def reset(self, target, users):
        try:
            self.customize_client.validate_disk_path(target.disk_path)
            self.customize_client.reset_multiple_passwords(target.disk_path, users)
        except GuestCustomizeError as e:
            raise PasswordResetError(f"Offline password reset on {target.disk_path} failed: {e}") from e


class RemoteOfflineStrategy(PasswordResetStrategy):
    """원격 노드에서 디스크 확인과 virt-customize를 하나의 셸 명령으로 실행합니다."""

    method = ResetMethod.REMOTE_OFFLINE

    def __init__(self, virt_customize_path: str = settings.virt_customize_path):
        self.virt_customize_path = virt_customize_path

    def reset(self, target, users):
        command = build_remote_reset_command(target.disk_path, users, self.virt_customize_path)
        try:
            target.hypervisor.execute_remote_command(command)
        except HypervisorError as e:
            raise PasswordResetError(f"Remote offline password reset on {target.disk_path} failed: {e}") from e


class PasswordResetCoordinator:
    def __init__(self, compute_service: ComputeService, customize_client: GuestCustomizeClient,
                 guest_agent_timeout: int = settings.guest_agent_timeout,
                 virt_customize_path: str = settings.virt_customize_path,
                 stop_wait_timeout: float = settings.stop_wait_timeout,
                 stop_wait_interval: float = settings.stop_wait_interval,
                 sleep: Callable[[float], None] = time.sleep):
        self.compute_service = compute_service
        self.strategies: Dict[ResetMethod, PasswordResetStrategy] = {
            ResetMethod.GUEST_AGENT: GuestAgentStrategy(guest_agent_timeout),
            ResetMethod.LOCAL_OFFLINE: LocalOfflineStrategy(customize_client),
            ResetMethod.REMOTE_OFFLINE: RemoteOfflineStrategy(virt_customize_path),
        }
        self.stop_wait_timeout = stop_wait_timeout
        self.stop_wait_interval = stop_wait_interval
        self.sleep = sleep

    @property
    def hypervisor(self) -> HypervisorClient:
        return self.compute_service.hypervisor

    def reset_password(self, instance_id: str, users: Dict[str, str], auto_start: bool = False) -> ResetPasswordResult:
        """
        인스턴스 사용자들의 비밀번호를 변경합니다.

        실행 중이고 게스트 에이전트가 있으면 에이전트로 변경합니다. 그렇지 않으면 디스크를 오프라인으로
        수정하는데, 실행 중인 인스턴스는 auto_start가 허용된 경우에만 정지 후 수정하고 다시 시작합니다.

        Args:
            instance_id: 대상 인스턴스 ID.
            users: 사용자 이름 -> 새 비밀번호.
            auto_start: 실행 중인 인스턴스를 자동으로 정지/재시작해도 되는지 여부.

        Returns:
            사용한 방법과 재시작 여부를 담은 결과. 변경 후 재시작에 실패하면 경고만 남기고
            restarted=False로 반환합니다.

        Raises:
            InvalidParameterError: 사용자 목록이 비었거나 사용자 이름이 잘못되었을 때.
            InstanceNotFoundError: 인스턴스가 없을 때.
            CapabilityUnavailableError: 에이전트 없이 실행 중이고 auto_start가 없을 때.
            NoDiskFoundError: 부트 디스크를 찾지 못했을 때.
            PasswordResetError: 정지 대기 시간 초과 또는 변경 도구 실패.
        """
        if not users:
            raise InvalidParameterError("At least one user is required.")
        try:
            build_password_args(users)
        except GuestCustomizeError as e:
            raise InvalidParameterError(str(e)) from e

        instance = self.compute_service.get_instance(instance_id, refresh=True)
        domain_name = instance.domain_name or instance.id
        target = ResetTarget(instance_id=instance_id, domain_name=domain_name, hypervisor=self.hypervisor)

        running = instance.state == STATE_RUNNING
        agent_available = running and self._agent_available(domain_name)
        method = choose_strategy(running, agent_available, self.hypervisor.is_remote())
        logger.info(f"Resetting {len(users)} password(s) on '{instance_id}' ({instance.state}) via {method.value}")

        if method == ResetMethod.GUEST_AGENT:
            self.strategies[method].reset(target, users)
            return ResetPasswordResult(instance_id, method.value, list(users))

        if instance.state != STATE_STOPPED and not auto_start:
            raise CapabilityUnavailableError(
                f"Guest agent is not available on '{instance.state}' instance '{instance_id}'; "
                f"allow auto_start to stop it and reset offline."
            )

        if instance.state != STATE_STOPPED:
            self._stop_and_wait(instance_id)

        try:
            target.disk_path = self._boot_disk_path(domain_name)
            self.strategies[method].reset(target, users)
        except (NoDiskFoundError, PasswordResetError):
            if running:
                self._restart(instance_id, "after password reset failure")
            raise

        restarted = running and self._restart(instance_id, "after password reset")
        return ResetPasswordResult(instance_id, method.value, list(users), restarted=restarted)

    def _agent_available(self, domain_name: str) -> bool:
        try:
            return self.hypervisor.guest_agent_available(domain_name)
        except HypervisorError as e:
            logger.warning(f"Guest agent check on '{domain_name}' failed, treating as unavailable: {e}")
            return False

    def _stop_and_wait(self, instance_id: str):
        change = self.compute_service.stop_instances([instance_id], force=False)[0]
        if change.error is not None:
            raise PasswordResetError(f"Failed to stop instance '{instance_id}': {change.error}") from change.error

        waited = 0.0
        while True:
            if self.compute_service.get_instance(instance_id, refresh=True).state == STATE_STOPPED:
                return
            if waited >= self.stop_wait_timeout:
                break
            self.sleep(self.stop_wait_interval)
            waited += self.stop_wait_interval
        raise PasswordResetError(f"Instance '{instance_id}' failed to stop within {self.stop_wait_timeout}s.")

    def _boot_disk_path(self, domain_name: str) -> str:
        try:
            disks = self.hypervisor.get_domain_disks(domain_name)
        except HypervisorError as e:
            raise NoDiskFoundError(f"Failed to read disks of '{domain_name}': {e}") from e
        candidates = [d for d in disks if d.device == "disk" and d.source_file]
        if not candidates:
            raise NoDiskFoundError(f"No disk found for '{domain_name}'.")
        boot = next((d for d in candidates if d.target_dev == "vda"), candidates[0])
        return boot.source_file

    def _restart(self, instance_id: str, context: str) -> bool:
        change = self.compute_service.start_instances([instance_id])[0]
        if change.error is not None:
            logger.warning(f"Failed to restart '{instance_id}' {context}: {change.error}")
            return False
        return True
