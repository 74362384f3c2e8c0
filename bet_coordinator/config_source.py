"""Bookie account configuration read from a JSON file.

The file holds either a list of account objects or ``{"bookies": [...]}``.
``refresh`` is polled by the reload loop; it re-parses only when the
file's SHA-256 digest changed since the last successful read.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

from bet_coordinator.models import BookieConfig

LOGGER = logging.getLogger(__name__)


def parse_bookie_configs(document: Any) -> List[BookieConfig]:
    if isinstance(document, dict):
        document = document.get("bookies", [])
    if not isinstance(document, list):
        raise ValueError("bookie config must be a list or an object with a 'bookies' list")

    configs: List[BookieConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(document):
        if not isinstance(entry, dict):
            LOGGER.warning("skipping bookie config entry %d: not an object", index)
            continue
        config = BookieConfig.from_mapping(entry)
        if not config.name:
            LOGGER.warning("skipping bookie config entry %d: missing name", index)
            continue
        if config.name in seen:
            LOGGER.warning("skipping duplicate bookie config for %s", config.name)
            continue
        seen.add(config.name)
        configs.append(config)
    return configs


class FileConfigSource:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._digest: Optional[str] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def digest(self) -> Optional[str]:
        return self._digest

    def list_bookie_configs(self) -> List[BookieConfig]:
        content = self._path.read_bytes()
        configs = parse_bookie_configs(json.loads(content.decode("utf-8")))
        self._digest = hashlib.sha256(content).hexdigest()
        LOGGER.info("loaded %d bookie configs from %s", len(configs), self._path)
        return configs

    def refresh(self) -> Optional[List[BookieConfig]]:
        """New configs if the file content changed, else None.

        Read or parse failures are logged and keep the previous configs.
        """
        try:
            content = self._path.read_bytes()
        except OSError as exc:
            LOGGER.error("cannot read bookie config %s: %s", self._path, exc)
            return None

        digest = hashlib.sha256(content).hexdigest()
        if digest == self._digest:
            return None

        try:
            configs = parse_bookie_configs(json.loads(content.decode("utf-8")))
        except (ValueError, UnicodeDecodeError) as exc:
            LOGGER.error("ignoring invalid bookie config %s: %s", self._path, exc)
            return None

        self._digest = digest
        LOGGER.info("bookie config %s changed; %d accounts configured", self._path, len(configs))
        return configs
