"""Decryption of secrets right before they are applied.

Secrets encrypted with sops carry a top level `sops` field. The scheduler
never inspects secret payloads and only hands encrypted objects to a
Decryptor, then applies whatever it returns.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any

import yaml

from .command import Command, run
from .exceptions import DecryptException
from .manifest import SECRET_KIND, resource_id

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Decryptor",
    "NoopDecryptor",
    "SopsDecryptor",
    "is_encrypted",
]

SOPS_BIN = "sops"
SOPS_FIELD = "sops"


def is_encrypted(obj: dict[str, Any]) -> bool:
    """Return True if the object is a sops encrypted Secret."""
    return obj.get("kind") == SECRET_KIND and SOPS_FIELD in obj


class Decryptor(ABC):
    """Decrypts encrypted objects in a render before apply."""

    async def decrypt_all(self, objects: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return the objects with every encrypted object decrypted."""
        result = []
        for obj in objects:
            if is_encrypted(obj):
                _LOGGER.debug("Decrypting %s", resource_id(obj))
                obj = await self.decrypt(obj)
            result.append(obj)
        return result

    @abstractmethod
    async def decrypt(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Return the decrypted object.

        Raises:
            DecryptException: If the object could not be decrypted.
        """


class NoopDecryptor(Decryptor):
    """Passes objects through unchanged, for secrets decrypted upstream."""

    async def decrypt(self, obj: dict[str, Any]) -> dict[str, Any]:
        return obj


class SopsDecryptor(Decryptor):
    """Decrypts objects with the `sops` command line tool.

    Key material is resolved by sops itself e.g. from `SOPS_AGE_KEY_FILE`.
    """

    def __init__(
        self, env: dict[str, str] | None = None, sops_bin: str = SOPS_BIN
    ) -> None:
        """Initialize the SopsDecryptor with extra environment for sops."""
        self._env = env
        self._sops_bin = sops_bin

    async def decrypt(self, obj: dict[str, Any]) -> dict[str, Any]:
        content = yaml.dump(obj, sort_keys=False).encode("utf-8")
        cmd = Command(
            [
                self._sops_bin,
                "--decrypt",
                "--input-type",
                "yaml",
                "--output-type",
                "yaml",
                "/dev/stdin",
            ],
            exc=DecryptException,
            env=self._env,
        )
        out = await run(cmd, stdin=content)
        try:
            decrypted = yaml.safe_load(out)
        except yaml.YAMLError as err:
            raise DecryptException(
                f"Unable to parse decrypted {resource_id(obj)}: {err}"
            ) from err
        if not isinstance(decrypted, dict):
            raise DecryptException(f"Decrypted {resource_id(obj)} is not an object")
        return decrypted
