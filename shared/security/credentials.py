"""
credentials.py
Resolution of broker credential handles.

The order plane never stores raw broker secrets in config, sessions, logs
or the database. Brokers reference a ``credentials_ref`` handle; the
store resolves it at authentication time and hands the secret out wrapped
in pydantic's SecretStr so an accidental log line prints ``**********``.

Lookup order:
1. explicit mapping passed to the constructor (tests, embedding)
2. environment variable ORDER_PLANE_CRED_<HANDLE> (upper-cased,
   non-alphanumerics replaced by '_')
"""

import logging
import os
import re
import threading
from typing import Dict, Mapping, Optional

from pydantic import SecretStr

logger = logging.getLogger(__name__)

ENV_PREFIX = "ORDER_PLANE_CRED_"


class CredentialNotFound(KeyError):
    """Raised when a credentials handle cannot be resolved"""


def env_var_for(handle: str) -> str:
    return ENV_PREFIX + re.sub(r"[^A-Z0-9]", "_", handle.upper())


class CredentialStore:
    """
    Thread-safe handle -> secret resolver.

    Example:
        >>> store = CredentialStore({"alpaca-main": "key:secret"})
        >>> store.resolve("alpaca-main").get_secret_value()
        'key:secret'
    """

    def __init__(self, secrets: Optional[Mapping[str, str]] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self._secrets: Dict[str, SecretStr] = {
            handle: SecretStr(value) for handle, value in (secrets or {}).items()
        }
        self._environ = environ
        self._lock = threading.Lock()

    def register(self, handle: str, secret: str) -> None:
        with self._lock:
            self._secrets[handle] = SecretStr(secret)
        logger.debug("credential registered: handle=%s", handle)

    def has(self, handle: str) -> bool:
        try:
            self.resolve(handle)
        except CredentialNotFound:
            return False
        return True

    def resolve(self, handle: str) -> SecretStr:
        with self._lock:
            secret = self._secrets.get(handle)
        if secret is not None:
            return secret
        environ = os.environ if self._environ is None else self._environ
        value = environ.get(env_var_for(handle))
        if value:
            return SecretStr(value)
        logger.warning("credential handle not resolvable: handle=%s", handle)
        raise CredentialNotFound(handle)
