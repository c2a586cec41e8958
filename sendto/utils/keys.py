import logging
import os

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


def load_or_create_fernet_key(key_path: str, env_key: str = "") -> bytes:
    """Return the server encryption key.

    ``env_key`` (SERVER_ENC_KEY) wins; otherwise the key file is read, and
    generated on first start. Losing the key file makes every stored
    credential unreadable, so accounts would need to register again.
    """
    if env_key:
        return env_key.encode() if isinstance(env_key, str) else env_key
    if os.path.exists(key_path):
        with open(key_path, "rb") as f:
            key = f.read().strip()
            if key:
                return key
    key = Fernet.generate_key()
    os.makedirs(os.path.dirname(key_path) or ".", exist_ok=True)
    with open(key_path, "wb") as f:
        f.write(key)
    try:
        os.chmod(key_path, 0o600)
    except OSError:
        logger.warning("Could not restrict permissions on %s", key_path)
    logger.info("Generated new server encryption key at %s", key_path)
    return key


def build_fernet(key_path: str, env_key: str = "") -> Fernet:
    return Fernet(load_or_create_fernet_key(key_path, env_key))
