from .mixins import TimestampMixin
from .image import Image
from .instance import Instance
from .keypair import KeyPair
from .snapshot import Snapshot
from .template import Template
from .volume import Volume
