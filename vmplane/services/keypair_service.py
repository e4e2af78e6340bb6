import base64
import hashlib
import logging
from typing import List, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from vmplane.database import models
from vmplane.repositories.interfaces import IKeyPairRepository
from vmplane.services.exceptions import InvalidParameterError, KeyPairAlreadyExistsError, KeyPairNotFoundError
from vmplane.services.types import CreatedKeyPair
from vmplane.utils.idgen import KEYPAIR_PREFIX, generate_id

logger = logging.getLogger(__name__)

_KEY_TYPES = {
    "ssh-ed25519": "ed25519",
    "ssh-rsa": "rsa",
    "ecdsa-sha2-nistp256": "ecdsa",
    "ecdsa-sha2-nistp384": "ecdsa",
    "ecdsa-sha2-nistp521": "ecdsa",
}


def fingerprint(public_key: str) -> str:
    """OpenSSH 공개키 blob의 MD5를 콜론으로 구분한 16진수 문자열로 반환합니다."""
    parts = public_key.split()
    if len(parts) < 2:
        raise InvalidParameterError("Public key must be in OpenSSH format ('<type> <base64>').")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except ValueError as e:
        raise InvalidParameterError(f"Public key is not valid base64: {e}") from e
    digest = hashlib.md5(blob).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


class KeyPairService:
    def __init__(self, keypair_repo: IKeyPairRepository):
        self.keypair_repo = keypair_repo

    def create_key_pair(self, name: str) -> CreatedKeyPair:
        """
        Ed25519 키 페어를 새로 만들어 공개키만 저장합니다.

        Args:
            name: 키 페어 이름.

        Returns:
            저장된 레코드와 OpenSSH 형식의 개인키. 개인키는 이때 한 번만 반환됩니다.

        Raises:
            InvalidParameterError: 이름이 비었을 때.
            KeyPairAlreadyExistsError: 같은 이름의 키 페어가 이미 있을 때.
        """
        self._ensure_name_available(name)

        private_key = ed25519.Ed25519PrivateKey.generate()
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode()

        key_pair = self._save(name, public_key, "ed25519")
        return CreatedKeyPair(key_pair=key_pair, private_key=private_pem)

    def import_key_pair(self, name: str, public_key: str) -> models.KeyPair:
        """
        사용자가 가진 OpenSSH 공개키를 등록합니다.

        Raises:
            InvalidParameterError: 이름이 비었거나 공개키 형식이 잘못되었을 때.
            KeyPairAlreadyExistsError: 같은 이름의 키 페어가 이미 있을 때.
        """
        self._ensure_name_available(name)
        public_key = (public_key or "").strip()
        try:
            serialization.load_ssh_public_key(public_key.encode())
        except (ValueError, UnsupportedAlgorithm) as e:
            raise InvalidParameterError(f"Invalid public key for '{name}': {e}") from e

        key_type = _KEY_TYPES.get(public_key.split()[0], "unknown")
        return self._save(name, public_key, key_type)

    def get_key_pair(self, name: str) -> models.KeyPair:
        key_pair = self.keypair_repo.find_by_name(name)
        if not key_pair:
            raise KeyPairNotFoundError(f"Key pair '{name}' not found.")
        return key_pair

    def describe_key_pairs(self, names: Optional[List[str]] = None) -> List[models.KeyPair]:
        if names:
            return [self.get_key_pair(name) for name in names]
        return self.keypair_repo.list()

    def delete_key_pair(self, name: str) -> bool:
        key_pair = self.get_key_pair(name)
        self.keypair_repo.soft_delete(key_pair)
        logger.info(f"Key pair '{name}' deleted.")
        return True

    def _ensure_name_available(self, name: str):
        if not name or not name.strip():
            raise InvalidParameterError("Key pair name is required.")
        if self.keypair_repo.find_by_name(name):
            raise KeyPairAlreadyExistsError(f"Key pair '{name}' already exists.")

    def _save(self, name: str, public_key: str, key_type: str) -> models.KeyPair:
        key_pair = models.KeyPair(
            id=generate_id(KEYPAIR_PREFIX),
            name=name,
            public_key=public_key,
            fingerprint=fingerprint(public_key),
            key_type=key_type,
        )
        self.keypair_repo.create(key_pair)
        logger.info(f"Key pair '{name}' registered ({key_type}, {key_pair.fingerprint})")
        return key_pair
