"""Per-device identity and key-derivation salt.

The salt is generated once per installation and persisted next to the data.
Every record key is derived from it, so losing this file makes all prior
ciphertext permanently undecryptable. That is intended: the file is never
regenerated while it exists, and a corrupt file is an error, not a reset.
"""

import base64
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from src.domain.ports import CryptoError, utc_now_iso

logger = logging.getLogger(__name__)

#: Salt length in bytes.
SALT_LENGTH = 16


class DeviceProfile(BaseModel):
    """Persisted device identity.

    Parameters:
        device_id: Random identifier stamped into exports
        salt: Base64-encoded key-derivation salt
        created_at: When the profile was first created
    """

    device_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    salt: str = Field(default_factory=lambda: base64.b64encode(os.urandom(SALT_LENGTH)).decode('ascii'))
    created_at: str = Field(default_factory=utc_now_iso)

    @field_validator("salt")
    @classmethod
    def validate_salt(cls, v: str) -> str:
        try:
            raw = base64.b64decode(v, validate=True)
        except ValueError as e:
            raise ValueError("salt must be base64") from e
        if len(raw) < SALT_LENGTH:
            raise ValueError(f"salt must be at least {SALT_LENGTH} bytes")
        return v

    @property
    def salt_bytes(self) -> bytes:
        return base64.b64decode(self.salt)


def load_or_create_device_profile(path: Union[str, Path]) -> DeviceProfile:
    """Load the device profile at ``path``, creating it on first use.

    Parameters:
        path: Location of the profile JSON file

    Returns:
        DeviceProfile: Existing or newly created profile

    Raises:
        CryptoError: If the file exists but cannot be parsed
    """
    profile_path = Path(path)
    if profile_path.exists():
        try:
            return DeviceProfile.model_validate_json(profile_path.read_text(encoding='utf-8'))
        except (PydanticValidationError, OSError) as e:
            raise CryptoError(
                f"Device profile at {profile_path} is unreadable; refusing to regenerate the salt"
            ) from e

    profile = DeviceProfile()
    profile_path.parent.mkdir(parents=True, exist_ok=True)
    # Write then rename so a crash never leaves a half-written salt
    tmp_path = profile_path.with_suffix(profile_path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(profile.model_dump(), indent=2), encoding='utf-8')
    os.replace(tmp_path, profile_path)
    try:
        os.chmod(profile_path, 0o600)
    except OSError:
        logger.warning(f"Could not restrict permissions on {profile_path}")

    logger.info(f"Created device profile {profile.device_id} at {profile_path}")
    return profile
