from .errors import DiskToolError, GuestCustomizeError, HypervisorError, HypervisorNotFoundError, ToolError
from .hypervisor import DomainDisk, DomainInfo, HypervisorClient, StoragePoolInfo, VolumeInfo
from .disk_tool import DiskToolClient, QemuImgClient
from .guest_customize import GuestCustomizeClient, VirtCustomizeClient
from .node_connections import NodeConnectionCache
