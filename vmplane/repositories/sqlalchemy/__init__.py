from .sqlalchemy_image_repository import SqlalchemyImageRepository
from .sqlalchemy_instance_repository import SqlalchemyInstanceRepository
from .sqlalchemy_keypair_repository import SqlalchemyKeyPairRepository
from .sqlalchemy_snapshot_repository import SqlalchemySnapshotRepository
from .sqlalchemy_template_repository import SqlalchemyTemplateRepository, template_repository_scope
from .sqlalchemy_volume_repository import SqlalchemyVolumeRepository
