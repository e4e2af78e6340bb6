# tests/clients/test_libvirt_client.py
import subprocess

import pytest
from unittest.mock import MagicMock, patch

libvirt = pytest.importorskip("libvirt")

from vmplane.clients.errors import HypervisorError, HypervisorNotFoundError
from vmplane.clients.libvirt_client import LibvirtClient, map_domain_state

DOMAIN_XML = """
<domain type='kvm'>
  <name>i-1</name>
  <devices>
    <disk type='file' device='disk'>
      <source file='/var/lib/libvirt/images/vol-boot.qcow2'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <disk type='file' device='cdrom'>
      <source file='/var/lib/libvirt/images/cloud-init/i-1-cidata.iso'/>
      <target dev='sda' bus='sata'/>
    </disk>
    <disk type='file' device='cdrom'>
      <target dev='sdb' bus='sata'/>
    </disk>
  </devices>
</domain>
"""

def libvirt_error(code: int) -> "libvirt.libvirtError":
    """주어진 에러 코드를 보고하는 libvirtError를 만듭니다."""
    error = libvirt.libvirtError("simulated failure")
    error.get_error_code = lambda: code
    return error

@pytest.fixture
def mock_conn() -> MagicMock:
    """libvirt.open을 모킹하여 실제 하이퍼바이저 연결을 방지합니다."""
    with patch("vmplane.clients.libvirt_client.libvirt.open") as mock_open:
        conn = MagicMock()
        mock_open.return_value = conn
        yield conn

@pytest.fixture
def client(mock_conn) -> LibvirtClient:
    return LibvirtClient("qemu:///system")

def make_domain(name="i-1", state=libvirt.VIR_DOMAIN_RUNNING) -> MagicMock:
    domain = MagicMock()
    domain.name.return_value = name
    domain.UUIDString.return_value = f"uuid-{name}"
    domain.info.return_value = [state, 2097152, 2097152, 2, 0]
    domain.XMLDesc.return_value = DOMAIN_XML
    return domain


class TestConnection:

    def test_open_failure_is_translated(self):
        with patch("vmplane.clients.libvirt_client.libvirt.open",
                   side_effect=libvirt_error(libvirt.VIR_ERR_SYSTEM_ERROR)):
            with pytest.raises(HypervisorError):
                LibvirtClient("qemu+ssh://root@node-2/system")

    @pytest.mark.parametrize("uri, remote", [
        ("qemu:///system", False),
        ("qemu+ssh://root@node-2/system", True),
        ("qemu+tcp://node-3/system", True),
        ("qemu://node-4/system", True),
    ])
    def test_is_remote(self, mock_conn, uri, remote):
        assert LibvirtClient(uri).is_remote() is remote

    def test_ssh_target_defaults_to_root(self, mock_conn):
        assert LibvirtClient("qemu+ssh://node-2/system").ssh_target() == "root@node-2"
        assert LibvirtClient("qemu+ssh://admin@node-2/system").ssh_target() == "admin@node-2"


class TestDomains:

    def test_get_domain_maps_state(self, client, mock_conn):
        mock_conn.lookupByName.return_value = make_domain(state=libvirt.VIR_DOMAIN_SHUTOFF)

        info = client.get_domain("i-1")

        assert info.state == "shut-off"
        assert info.memory_kib == 2097152
        assert info.vcpus == 2

    def test_missing_domain_raises_not_found(self, client, mock_conn):
        mock_conn.lookupByName.side_effect = libvirt_error(libvirt.VIR_ERR_NO_DOMAIN)

        with pytest.raises(HypervisorNotFoundError):
            client.get_domain("i-missing")

    def test_other_errors_are_not_not_found(self, client, mock_conn):
        mock_conn.lookupByName.side_effect = libvirt_error(libvirt.VIR_ERR_INTERNAL_ERROR)

        with pytest.raises(HypervisorError) as exc_info:
            client.get_domain("i-1")
        assert not isinstance(exc_info.value, HypervisorNotFoundError)

    def test_get_domain_disks_parses_xml(self, client, mock_conn):
        mock_conn.lookupByName.return_value = make_domain()

        disks = client.get_domain_disks("i-1")

        assert [(d.device, d.target_dev, d.source_file) for d in disks] == [
            ("disk", "vda", "/var/lib/libvirt/images/vol-boot.qcow2"),
            ("cdrom", "sda", "/var/lib/libvirt/images/cloud-init/i-1-cidata.iso"),
            ("cdrom", "sdb", ""),
        ]

    def test_create_domain_start_failure_undefines(self, client, mock_conn):
        """시작에 실패한 도메인은 정의도 해제합니다."""
        # === Arrange ===
        domain = make_domain()
        domain.create.side_effect = libvirt_error(libvirt.VIR_ERR_INTERNAL_ERROR)
        mock_conn.defineXML.return_value = domain

        # === Act & Assert ===
        with pytest.raises(HypervisorError):
            client.create_domain("<domain/>", start=True)
        domain.undefine.assert_called_once()

    def test_delete_domain_destroys_running_domain_first(self, client, mock_conn):
        domain = make_domain()
        domain.isActive.return_value = True
        mock_conn.lookupByName.return_value = domain

        client.delete_domain("i-1")

        domain.destroy.assert_called_once()
        domain.undefineFlags.assert_called_once()

    def test_offline_memory_change_raises_maximum_first(self, client, mock_conn):
        domain = make_domain()
        mock_conn.lookupByName.return_value = domain

        client.set_memory("i-1", 4194304, live=False)

        first, second = domain.setMemoryFlags.call_args_list
        assert first[0] == (4194304, libvirt.VIR_DOMAIN_AFFECT_CONFIG | libvirt.VIR_DOMAIN_MEM_MAXIMUM)
        assert second[0] == (4194304, libvirt.VIR_DOMAIN_AFFECT_CONFIG)


class TestRemoteCommands:

    @patch("vmplane.clients.libvirt_client.subprocess.run")
    def test_execute_remote_command_uses_ssh(self, mock_run, mock_conn):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout=b"ok\n", stderr=b"")

        output = LibvirtClient("qemu+ssh://root@node-2/system").execute_remote_command("uptime")

        assert output == "ok\n"
        command = mock_run.call_args[0][0]
        assert command[0] == "ssh"
        assert command[-2:] == ["root@node-2", "uptime"]

    @patch("vmplane.clients.libvirt_client.subprocess.run")
    def test_remote_command_failure(self, mock_run, mock_conn):
        mock_run.side_effect = subprocess.CalledProcessError(1, "ssh", stderr=b"No such file")

        with pytest.raises(HypervisorError, match="No such file"):
            LibvirtClient("qemu+ssh://root@node-2/system").execute_remote_command("cat /nope")

    def test_local_connection_refuses_remote_commands(self, client):
        with pytest.raises(HypervisorError):
            client.execute_remote_command("uptime")


def test_map_domain_state_unknown_code():
    assert map_domain_state(99) == "nostate"
    assert map_domain_state(libvirt.VIR_DOMAIN_RUNNING) == "running"
