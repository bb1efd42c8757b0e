"""
Credential stores.

The coordinator is the only writer. Stores do no validation of their own:
whatever pair they are given is what `get()` returns until the next write.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from petnest.models.credentials import CredentialPair

logger = logging.getLogger(__name__)


class CredentialStore:
    def get(self) -> CredentialPair:
        raise NotImplementedError

    def set(self, pair: CredentialPair) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    def __init__(self, pair: Optional[CredentialPair] = None):
        self._pair = pair or CredentialPair()

    def get(self) -> CredentialPair:
        return self._pair

    def set(self, pair: CredentialPair) -> None:
        self._pair = pair

    def clear(self) -> None:
        self._pair = CredentialPair()


class FileCredentialStore(CredentialStore):
    """JSON file store, survives process restarts. Used by the CLI."""

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> CredentialPair:
        try:
            return CredentialPair.model_validate(json.loads(self._path.read_text()))
        except FileNotFoundError:
            return CredentialPair()
        except ValueError as e:
            logger.warning("Ignoring unreadable credentials file %s: %s", self._path, e)
            return CredentialPair()

    def set(self, pair: CredentialPair) -> None:
        """Atomic replace; the file is only ever readable by its owner (mkstemp creates it 0600)."""
        self._path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(pair.model_dump_json(indent=2))
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
