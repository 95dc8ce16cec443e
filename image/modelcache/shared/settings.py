# ---------------------------------------------------------------------------- #

from __future__ import annotations

import json
from asyncio import CancelledError, sleep, to_thread
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum, unique
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Optional

import yamale  # type: ignore

from modelcache.shared.config import (
    CONFIG_FILE_CHECK_INTERVAL,
    DEFAULT_CMD_TIMEOUT_SECONDS,
    NODE_DEFAULT_NON_LISTED_NODES,
)
from modelcache.shared.errors import (
    ConfigValidationError,
    RequestValidationError,
)
from modelcache.shared.util import clean_path, log, log_debug

# ---------------------------------------------------------------------------- #

_SCHEMA = yamale.make_schema(
    content="""
nodePathMap: list(include('nodePath'), required=False)
sharedFileSystemPath: str(required=False)
cmdTimeoutSeconds: int(required=False)
---
nodePath:
  node: str()
  paths: list(str(), required=False)
"""
)


@unique
class Topology(Enum):
    SHARED_FILESYSTEM = "SharedFilesystem"
    PER_NODE_PATHS = "PerNodePaths"


@dataclass(frozen=True)
class NodePathConfig:
    """Validated and canonicalized config. Never mutated; a reload produces a
    new instance."""

    node_path_map: Mapping[str, frozenset[str]]
    shared_file_system_path: str
    cmd_timeout_seconds: int

    @property
    def topology(self) -> Topology:

        if self.shared_file_system_path and self.node_path_map:
            raise ConfigValidationError(
                "Both nodePathMap and sharedFileSystemPath are defined. Please"
                " make sure only one is in use"
            )

        if self.node_path_map:
            return Topology.PER_NODE_PATHS

        if self.shared_file_system_path:
            return Topology.SHARED_FILESYSTEM

        raise ConfigValidationError(
            "Both nodePathMap and sharedFileSystemPath are unconfigured"
        )

    def path_on_node(self, node: str) -> str:
        """
        Return the base path under which volumes for the given node are
        created.

        Under a shared file system `node` is ignored. Otherwise, nodes not in
        the map fall back to the entry for NODE_DEFAULT_NON_LISTED_NODES, and
        when a node has several paths the smallest one is used.
        """

        if self.topology is Topology.SHARED_FILESYSTEM:
            return self.shared_file_system_path

        paths = self.node_path_map.get(node)

        if paths is None:

            paths = self.node_path_map.get(NODE_DEFAULT_NON_LISTED_NODES)

            if paths is None:
                raise RequestValidationError(
                    f"Config doesn't contain node {node}, and no"
                    f" {NODE_DEFAULT_NON_LISTED_NODES} available"
                )

            log_debug(
                f"Config doesn't contain node {node}, use"
                f" {NODE_DEFAULT_NON_LISTED_NODES} instead"
            )

        if not paths:
            raise RequestValidationError(
                f"No local path available on node {node}"
            )

        return min(paths)


# ---------------------------------------------------------------------------- #


def load_raw_config(source: str) -> Any:
    """
    If `source` ends in '.json', it is the path to a JSON config file.
    Otherwise `source` itself is the JSON text.

    The result is validated against the config schema but not canonicalized.
    """

    try:
        if source.endswith(".json"):
            raw = json.loads(Path(source).read_text(encoding="utf-8"))
        else:
            raw = json.loads(source)
    except (OSError, ValueError) as e:
        raise ConfigValidationError(
            f"Fail to load config file {source}: {e}"
        ) from e

    if not isinstance(raw, dict):
        raise ConfigValidationError(
            f"Fail to load config file {source}: expected a JSON object"
        )

    try:
        yamale.validate(schema=_SCHEMA, data=[(raw, None)], strict=False)
    except yamale.YamaleError as e:
        raise ConfigValidationError(
            f"Fail to load config file {source}:"
            + "".join(f"\n  {msg}" for r in e.results for msg in r.errors)
        ) from e

    return raw


def canonicalize_config(
    raw: Any, *, default_cmd_timeout_seconds: int = DEFAULT_CMD_TIMEOUT_SECONDS
) -> NodePathConfig:

    node_path_map: dict[str, frozenset[str]] = {}

    for entry in raw.get("nodePathMap") or []:

        node = entry["node"]

        if node in node_path_map:
            raise ConfigValidationError(
                f"Config canonicalization failed: duplicate node {node}"
            )

        paths: set[str] = set()

        for p in entry.get("paths") or []:

            if not p.startswith("/"):
                raise ConfigValidationError(
                    "Config canonicalization failed: path must start with /"
                    f" for path {p} on node {node}"
                )

            path = clean_path(p)

            if path == "/":
                raise ConfigValidationError(
                    "Config canonicalization failed: cannot use root ('/') as"
                    f" path on node {node}"
                )

            if path in paths:
                raise ConfigValidationError(
                    "Config canonicalization failed: duplicate path"
                    f" {p} on node {node}"
                )

            paths.add(path)

        node_path_map[node] = frozenset(paths)

    timeout = raw.get("cmdTimeoutSeconds") or 0

    config = NodePathConfig(
        node_path_map=MappingProxyType(node_path_map),
        shared_file_system_path=raw.get("sharedFileSystemPath") or "",
        cmd_timeout_seconds=(
            timeout if timeout > 0 else default_cmd_timeout_seconds
        ),
    )

    config.topology  # raises if both or neither path forms are set

    return config


def load_config(
    source: str,
    *,
    default_cmd_timeout_seconds: int = DEFAULT_CMD_TIMEOUT_SECONDS,
) -> NodePathConfig:

    return canonicalize_config(
        load_raw_config(source),
        default_cmd_timeout_seconds=default_cmd_timeout_seconds,
    )


# ---------------------------------------------------------------------------- #


class ConfigStore:
    """
    Holds the config currently in effect and reloads it from its source.

    Readers get an immutable snapshot; `refresh()` parses and validates
    outside of the lock and only holds it to swap the snapshot.
    """

    __source: str
    __default_cmd_timeout_seconds: int
    __lock: Lock
    __raw: Optional[Any]
    __snapshot: Optional[NodePathConfig]

    def __init__(
        self,
        source: str,
        *,
        default_cmd_timeout_seconds: int = DEFAULT_CMD_TIMEOUT_SECONDS,
    ) -> None:
        """Loads the config immediately, raising ConfigValidationError if it is
        invalid."""

        self.__source = source
        self.__default_cmd_timeout_seconds = default_cmd_timeout_seconds
        self.__lock = Lock()
        self.__raw = None
        self.__snapshot = None

        self.refresh()

    @property
    def snapshot(self) -> NodePathConfig:

        snapshot = self.__snapshot

        if snapshot is None:
            raise ConfigValidationError("No valid config available")

        return snapshot

    def refresh(self) -> bool:
        """
        Re-read the config source.

        Returns False if its contents are unchanged, True if a new config was
        applied. Raises ConfigValidationError if the new contents are invalid,
        in which case the previous config remains in effect.
        """

        raw = load_raw_config(self.__source)

        if raw == self.__raw:
            return False  # no need to update

        config = canonicalize_config(
            raw, default_cmd_timeout_seconds=self.__default_cmd_timeout_seconds
        )

        with self.__lock:
            self.__raw = raw
            self.__snapshot = config

        log_debug(f"Applied config: {json.dumps(raw)}")

        return True

    async def watch(
        self, interval: timedelta = CONFIG_FILE_CHECK_INTERVAL
    ) -> None:
        """Refresh the config every `interval` until cancelled. The file is
        read in a worker thread."""

        try:

            while True:

                await sleep(interval.total_seconds())

                try:
                    await to_thread(self.refresh)
                except ConfigValidationError as e:
                    log(f"Failed to load the new config file: {e}")

        except CancelledError:

            log("Stopped watching config file")
            raise


# ---------------------------------------------------------------------------- #
