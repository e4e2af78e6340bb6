import logging
import os
import shlex
import subprocess
import tempfile
import xml.etree.ElementTree as ET
from typing import List
from urllib.parse import urlparse

import libvirt
import libvirt_qemu

from vmplane.clients.errors import HypervisorError, HypervisorNotFoundError
from vmplane.clients.hypervisor import (
    GIB,
    DomainDisk,
    DomainInfo,
    HypervisorClient,
    StoragePoolInfo,
    VolumeInfo,
    DOMAIN_STATE_BLOCKED,
    DOMAIN_STATE_CRASHED,
    DOMAIN_STATE_NOSTATE,
    DOMAIN_STATE_PAUSED,
    DOMAIN_STATE_PMSUSPENDED,
    DOMAIN_STATE_RUNNING,
    DOMAIN_STATE_SHUT_OFF,
    DOMAIN_STATE_SHUTTING_DOWN,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {
    libvirt.VIR_ERR_NO_DOMAIN,
    libvirt.VIR_ERR_NO_STORAGE_POOL,
    libvirt.VIR_ERR_NO_STORAGE_VOL,
}

_POOL_STATES = {
    libvirt.VIR_STORAGE_POOL_INACTIVE: "inactive",
    libvirt.VIR_STORAGE_POOL_BUILDING: "building",
    libvirt.VIR_STORAGE_POOL_RUNNING: "running",
    libvirt.VIR_STORAGE_POOL_DEGRADED: "degraded",
    libvirt.VIR_STORAGE_POOL_INACCESSIBLE: "inaccessible",
}

SSH_OPTIONS = ["-o", "StrictHostKeyChecking=no", "-o", "BatchMode=yes"]


def map_domain_state(state_code: int) -> str:
    state_map = {
        libvirt.VIR_DOMAIN_NOSTATE: DOMAIN_STATE_NOSTATE,
        libvirt.VIR_DOMAIN_RUNNING: DOMAIN_STATE_RUNNING,
        libvirt.VIR_DOMAIN_BLOCKED: DOMAIN_STATE_BLOCKED,
        libvirt.VIR_DOMAIN_PAUSED: DOMAIN_STATE_PAUSED,
        libvirt.VIR_DOMAIN_SHUTDOWN: DOMAIN_STATE_SHUTTING_DOWN,
        libvirt.VIR_DOMAIN_SHUTOFF: DOMAIN_STATE_SHUT_OFF,
        libvirt.VIR_DOMAIN_CRASHED: DOMAIN_STATE_CRASHED,
        libvirt.VIR_DOMAIN_PMSUSPENDED: DOMAIN_STATE_PMSUSPENDED,
    }
    return state_map.get(state_code, DOMAIN_STATE_NOSTATE)


def _translate(e: libvirt.libvirtError, what: str) -> HypervisorError:
    if e.get_error_code() in _NOT_FOUND_CODES:
        return HypervisorNotFoundError(f"{what} not found: {e}")
    return HypervisorError(f"{what} failed: {e}")


class LibvirtClient(HypervisorClient):
    """libvirt-python 위에 HypervisorClient를 구현합니다. 원격 명령은 ssh로 실행합니다."""

    def __init__(self, uri="qemu:///system"):
        self.uri = uri
        try:
            self.conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to open connection to the hypervisor at '{uri}': {e}") from e

    # ------------------------------------------------------------------
    # 연결 정보
    # ------------------------------------------------------------------

    def is_remote(self) -> bool:
        parsed = urlparse(self.uri)
        scheme = parsed.scheme.lower()
        return any(t in scheme for t in ("ssh", "tcp", "tls")) or bool(parsed.hostname)

    def ssh_target(self) -> str:
        parsed = urlparse(self.uri)
        user = parsed.username or "root"
        return f"{user}@{parsed.hostname}"

    # ------------------------------------------------------------------
    # Storage pools
    # ------------------------------------------------------------------

    def _lookup_pool(self, pool_name):
        try:
            return self.conn.storagePoolLookupByName(pool_name)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Storage pool '{pool_name}'") from e

    def _pool_info(self, pool) -> StoragePoolInfo:
        state, capacity, allocation, available = pool.info()
        path = ET.fromstring(pool.XMLDesc(0)).findtext("target/path") or ""
        return StoragePoolInfo(
            name=pool.name(),
            state=_POOL_STATES.get(state, "unknown"),
            path=path,
            capacity_bytes=capacity,
            allocation_bytes=allocation,
            available_bytes=available,
        )

    def get_storage_pool(self, pool_name: str) -> StoragePoolInfo:
        pool = self._lookup_pool(pool_name)
        try:
            return self._pool_info(pool)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Storage pool '{pool_name}' info") from e

    def list_storage_pools(self) -> List[StoragePoolInfo]:
        try:
            return [self._pool_info(pool) for pool in self.conn.listAllStoragePools(0)]
        except libvirt.libvirtError as e:
            raise _translate(e, "Listing storage pools") from e

    def refresh_storage_pool(self, pool_name: str) -> None:
        pool = self._lookup_pool(pool_name)
        try:
            pool.refresh(0)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Refreshing storage pool '{pool_name}'") from e

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def _volume_info(self, vol) -> VolumeInfo:
        _, capacity, allocation = vol.info()
        fmt = ET.fromstring(vol.XMLDesc(0)).find("target/format")
        return VolumeInfo(
            name=vol.name(),
            path=vol.path(),
            capacity_bytes=capacity,
            allocation_bytes=allocation,
            format=fmt.get("type") if fmt is not None else "raw",
        )

    def create_volume(self, pool_name: str, volume_name: str, size_gb: int, fmt: str) -> VolumeInfo:
        pool = self._lookup_pool(pool_name)
        volume_xml = (
            "<volume>"
            f"<name>{volume_name}</name>"
            f"<capacity unit='G'>{size_gb}</capacity>"
            f"<target><format type='{fmt}'/></target>"
            "</volume>"
        )
        try:
            vol = pool.createXML(volume_xml, 0)
            return self._volume_info(vol)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Creating volume '{volume_name}' in pool '{pool_name}'") from e

    def _lookup_volume(self, pool_name, volume_name):
        pool = self._lookup_pool(pool_name)
        try:
            return pool.storageVolLookupByName(volume_name)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Volume '{volume_name}' in pool '{pool_name}'") from e

    def get_volume(self, pool_name: str, volume_name: str) -> VolumeInfo:
        vol = self._lookup_volume(pool_name, volume_name)
        try:
            return self._volume_info(vol)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Volume '{volume_name}' info") from e

    def delete_volume(self, pool_name: str, volume_name: str) -> None:
        vol = self._lookup_volume(pool_name, volume_name)
        try:
            vol.delete(0)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Deleting volume '{volume_name}'") from e

    def resize_volume(self, pool_name: str, volume_name: str, size_gb: int) -> None:
        vol = self._lookup_volume(pool_name, volume_name)
        try:
            vol.resize(size_gb * GIB, 0)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Resizing volume '{volume_name}'") from e

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def _lookup_domain(self, name):
        try:
            return self.conn.lookupByName(name)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Domain '{name}'") from e

    def list_domain_names(self) -> List[str]:
        try:
            return [domain.name() for domain in self.conn.listAllDomains(0)]
        except libvirt.libvirtError as e:
            raise _translate(e, "Listing domains") from e

    def _domain_info(self, domain) -> DomainInfo:
        state_code, max_mem_kib, _, vcpus, _ = domain.info()
        return DomainInfo(
            name=domain.name(),
            uuid=domain.UUIDString(),
            state=map_domain_state(state_code),
            memory_kib=max_mem_kib,
            vcpus=vcpus,
        )

    def get_domain(self, name: str) -> DomainInfo:
        domain = self._lookup_domain(name)
        try:
            return self._domain_info(domain)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Domain '{name}' info") from e

    def get_domain_disks(self, name: str) -> List[DomainDisk]:
        domain = self._lookup_domain(name)
        try:
            root = ET.fromstring(domain.XMLDesc(0))
        except libvirt.libvirtError as e:
            raise _translate(e, f"Domain '{name}' XML") from e

        disks = []
        for disk in root.findall("devices/disk"):
            source = disk.find("source")
            target = disk.find("target")
            disks.append(DomainDisk(
                device=disk.get("device", "disk"),
                target_dev=target.get("dev", "") if target is not None else "",
                source_file=(source.get("file") or "") if source is not None else "",
                bus=target.get("bus", "") if target is not None else "",
            ))
        return disks

    def create_domain(self, domain_xml: str, start: bool = True) -> DomainInfo:
        try:
            domain = self.conn.defineXML(domain_xml)
        except libvirt.libvirtError as e:
            raise _translate(e, "Defining domain") from e

        if start:
            try:
                domain.create()
            except libvirt.libvirtError as e:
                # 시작하지 못한 도메인은 정의도 남기지 않는다
                try:
                    domain.undefine()
                except libvirt.libvirtError as undefine_error:
                    logger.warning(f"Rollback Warning: Failed to undefine domain '{domain.name()}': {undefine_error}")
                raise _translate(e, "Starting domain") from e

        return self._domain_info(domain)

    def start_domain(self, name: str) -> None:
        domain = self._lookup_domain(name)
        try:
            domain.create()
        except libvirt.libvirtError as e:
            raise _translate(e, f"Starting domain '{name}'") from e

    def shutdown_domain(self, name: str) -> None:
        domain = self._lookup_domain(name)
        try:
            domain.shutdown()
        except libvirt.libvirtError as e:
            raise _translate(e, f"Shutting down domain '{name}'") from e

    def destroy_domain(self, name: str) -> None:
        domain = self._lookup_domain(name)
        try:
            domain.destroy()
        except libvirt.libvirtError as e:
            raise _translate(e, f"Destroying domain '{name}'") from e

    def reboot_domain(self, name: str) -> None:
        domain = self._lookup_domain(name)
        try:
            domain.reboot(0)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Rebooting domain '{name}'") from e

    def delete_domain(self, name: str) -> None:
        domain = self._lookup_domain(name)
        try:
            if domain.isActive():
                domain.destroy()
            domain.undefineFlags(
                libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
                | libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
                | libvirt.VIR_DOMAIN_UNDEFINE_NVRAM
            )
        except libvirt.libvirtError as e:
            raise _translate(e, f"Deleting domain '{name}'") from e

    def _affect_flags(self, domain, live):
        flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
        if live and domain.isActive():
            flags |= libvirt.VIR_DOMAIN_AFFECT_LIVE
        return flags

    def attach_disk(self, domain_name: str, volume_path: str, device: str) -> None:
        domain = self._lookup_domain(domain_name)
        target = device.replace("/dev/", "")
        disk_xml = (
            "<disk type='file' device='disk'>"
            "<driver name='qemu' type='qcow2'/>"
            f"<source file='{volume_path}'/>"
            f"<target dev='{target}' bus='virtio'/>"
            "</disk>"
        )
        try:
            domain.attachDeviceFlags(disk_xml, self._affect_flags(domain, live=True))
        except libvirt.libvirtError as e:
            raise _translate(e, f"Attaching '{volume_path}' to '{domain_name}'") from e

    def detach_disk(self, domain_name: str, device: str) -> None:
        target = device.replace("/dev/", "")
        disk = next((d for d in self.get_domain_disks(domain_name) if d.target_dev == target), None)
        if disk is None:
            raise HypervisorNotFoundError(f"Disk '{device}' not found on domain '{domain_name}'")

        domain = self._lookup_domain(domain_name)
        disk_xml = (
            "<disk type='file' device='disk'>"
            f"<source file='{disk.source_file}'/>"
            f"<target dev='{target}' bus='{disk.bus or 'virtio'}'/>"
            "</disk>"
        )
        try:
            domain.detachDeviceFlags(disk_xml, self._affect_flags(domain, live=True))
        except libvirt.libvirtError as e:
            raise _translate(e, f"Detaching '{device}' from '{domain_name}'") from e

    def set_memory(self, domain_name: str, memory_kib: int, live: bool) -> None:
        domain = self._lookup_domain(domain_name)
        try:
            if live:
                domain.setMemoryFlags(memory_kib, libvirt.VIR_DOMAIN_AFFECT_LIVE)
            else:
                domain.setMemoryFlags(memory_kib, libvirt.VIR_DOMAIN_AFFECT_CONFIG | libvirt.VIR_DOMAIN_MEM_MAXIMUM)
                domain.setMemoryFlags(memory_kib, libvirt.VIR_DOMAIN_AFFECT_CONFIG)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Setting memory of '{domain_name}'") from e

    def set_vcpus(self, domain_name: str, vcpus: int, live: bool) -> None:
        domain = self._lookup_domain(domain_name)
        try:
            if live:
                domain.setVcpusFlags(vcpus, libvirt.VIR_DOMAIN_AFFECT_LIVE)
            else:
                domain.setVcpusFlags(vcpus, libvirt.VIR_DOMAIN_AFFECT_CONFIG | libvirt.VIR_DOMAIN_VCPU_MAXIMUM)
                domain.setVcpusFlags(vcpus, libvirt.VIR_DOMAIN_AFFECT_CONFIG)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Setting vCPUs of '{domain_name}'") from e

    # ------------------------------------------------------------------
    # Guest agent
    # ------------------------------------------------------------------

    def guest_agent_available(self, domain_name: str) -> bool:
        domain = self._lookup_domain(domain_name)
        try:
            libvirt_qemu.qemuAgentCommand(domain, '{"execute":"guest-ping"}', 5, 0)
            return True
        except libvirt.libvirtError as e:
            logger.debug(f"Guest agent on '{domain_name}' not responding: {e}")
            return False

    def guest_agent_command(self, domain_name: str, command: str, timeout: int = 30) -> str:
        domain = self._lookup_domain(domain_name)
        try:
            return libvirt_qemu.qemuAgentCommand(domain, command, timeout, 0)
        except libvirt.libvirtError as e:
            raise _translate(e, f"Guest agent command on '{domain_name}'") from e

    # ------------------------------------------------------------------
    # Remote node (ssh)
    # ------------------------------------------------------------------

    def _ssh(self, command: str, input_bytes: bytes = None) -> bytes:
        if not self.is_remote():
            raise HypervisorError("not a remote connection")
        try:
            result = subprocess.run(
                ["ssh", *SSH_OPTIONS, self.ssh_target(), command],
                input=input_bytes,
                check=True,
                capture_output=True,
            )
        except subprocess.CalledProcessError as e:
            raise HypervisorError(f"ssh command failed ({e.returncode}): {e.stderr.decode(errors='replace')}") from e
        except FileNotFoundError as e:
            raise HypervisorError("ssh command not found.") from e
        return result.stdout

    def execute_remote_command(self, command: str) -> str:
        return self._ssh(command).decode(errors="replace")

    def read_remote_file(self, path: str) -> bytes:
        return self._ssh(f"cat {shlex.quote(path)}")

    def write_remote_file(self, path: str, data: bytes) -> None:
        self._ssh(f"cat > {shlex.quote(path)}", input_bytes=data)

    def list_remote_files(self, directory: str, pattern: str = "*") -> List[str]:
        output = self.execute_remote_command(
            f"find {shlex.quote(directory)} -maxdepth 1 -type f -name {shlex.quote(pattern)} -printf '%f\\n' 2>/dev/null"
        )
        return [line.strip() for line in output.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # cloud-init
    # ------------------------------------------------------------------

    def create_cloud_init_iso(self, output_dir: str, name: str, meta_data: str, user_data: str) -> str:
        iso_path = os.path.join(output_dir, f"{name}-cidata.iso")

        if self.is_remote():
            work_dir = os.path.join(output_dir, f".{name}-cidata")
            self.execute_remote_command(f"mkdir -p {shlex.quote(work_dir)}")
            self.write_remote_file(os.path.join(work_dir, "meta-data"), meta_data.encode())
            self.write_remote_file(os.path.join(work_dir, "user-data"), user_data.encode())
            command = shlex.join([
                "genisoimage", "-output", iso_path, "-volid", "cidata", "-joliet", "-rock",
                os.path.join(work_dir, "user-data"), os.path.join(work_dir, "meta-data"),
            ])
            self.execute_remote_command(f"{command} && rm -rf {shlex.quote(work_dir)}")
            return iso_path

        os.makedirs(output_dir, exist_ok=True)
        with tempfile.TemporaryDirectory() as work_dir:
            for filename, content in (("meta-data", meta_data), ("user-data", user_data)):
                with open(os.path.join(work_dir, filename), "w") as f:
                    f.write(content)
            try:
                subprocess.run(
                    ["genisoimage", "-output", iso_path, "-volid", "cidata", "-joliet", "-rock",
                     os.path.join(work_dir, "user-data"), os.path.join(work_dir, "meta-data")],
                    check=True, capture_output=True, text=True,
                )
            except subprocess.CalledProcessError as e:
                raise HypervisorError(f"Failed to build cloud-init ISO for {name}: {e.stderr}") from e
            except FileNotFoundError as e:
                raise HypervisorError("genisoimage command not found. Install genisoimage.") from e
        return iso_path
