from .base import IRepository
from .image import IImageRepository
from .instance import IInstanceRepository
from .keypair import IKeyPairRepository
from .snapshot import ISnapshotRepository
from .template import ITemplateRepository
from .volume import IVolumeRepository
