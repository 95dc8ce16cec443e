# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_CEILING
from enum import Enum, unique
from typing import Any, Optional

from kubernetes_asyncio.client import (  # type: ignore
    V1HostPathVolumeSource,
    V1LocalVolumeSource,
    V1Node,
    V1NodeSelector,
    V1NodeSelectorRequirement,
    V1NodeSelectorTerm,
    V1ObjectMeta,
    V1ObjectReference,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeSpec,
    V1StorageClass,
    V1VolumeNodeAffinity,
)

from modelcache.shared.config import (
    ANNOTATION_DEFAULT_VOLUME_TYPE,
    ANNOTATION_MODEL_REGISTRY,
    ANNOTATION_PROVISIONED_BY,
    ANNOTATION_VOLUME_TYPE,
    DEFAULT_VOLUME_TYPE,
    KEY_NODE,
    PARAM_MODEL_CACHE,
    PARAM_PATH_PATTERN,
    PARAM_REGISTRY,
    PARAM_STORE_TYPE,
)
from modelcache.shared.errors import RequestValidationError
from modelcache.shared.kubernetes import parse_and_round_quantity
from modelcache.shared.pods import (
    SETUP_COMMAND,
    TEARDOWN_COMMAND,
    Action,
    HelperPodRunner,
    ModelCacheOptions,
    VolumeOptions,
)
from modelcache.shared.settings import ConfigStore, Topology
from modelcache.shared.templating import ClaimMetadata, resolve_path_pattern
from modelcache.shared.util import clean_path, join_path, log, parse_bool

# ---------------------------------------------------------------------------- #


@unique
class VolumeMode(Enum):
    FILE_SYSTEM = "Filesystem"
    BLOCK = "Block"


@unique
class AccessMode(Enum):
    READ_WRITE_ONCE = "ReadWriteOnce"
    READ_ONLY_MANY = "ReadOnlyMany"
    READ_WRITE_MANY = "ReadWriteMany"
    READ_WRITE_ONCE_POD = "ReadWriteOncePod"


@unique
class VolumeType(Enum):
    LOCAL = "local"
    HOST_PATH = "hostPath"

    @staticmethod
    def parse(value: str) -> VolumeType:

        for volume_type in VolumeType:
            if volume_type.value.lower() == value.lower():
                return volume_type

        raise RequestValidationError(
            f"Failed to create persistent volume source: {value!r} is not a"
            " recognised volume type"
        )


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class RequestedVolumeProperties:

    volume_mode: VolumeMode
    access_modes: frozenset[AccessMode]
    capacity: str
    """The requested storage quantity, as written in the claim."""

    size_in_bytes: int

    @staticmethod
    def from_pvc(pvc: V1PersistentVolumeClaim) -> RequestedVolumeProperties:

        capacity = pvc.spec.resources.requests["storage"]

        return RequestedVolumeProperties(
            volume_mode=VolumeMode(pvc.spec.volume_mode or "Filesystem"),
            access_modes=frozenset(map(AccessMode, pvc.spec.access_modes)),
            capacity=capacity,
            size_in_bytes=parse_and_round_quantity(
                capacity, rounding_mode=ROUND_CEILING
            ),
        )


@dataclass(frozen=True)
class StorageClassParameters:

    model_cache: bool
    registry: Optional[str]
    store_type: Optional[str]
    path_pattern: Optional[str]

    @staticmethod
    def from_storage_class(sc: V1StorageClass) -> StorageClassParameters:
        """A storage class that sets 'modelCache', to any value, must also set
        'registry' and 'storeType'."""

        params: Mapping[str, str] = sc.parameters or {}

        model_cache = False
        registry = None
        store_type = None

        if PARAM_MODEL_CACHE in params:

            try:
                model_cache = parse_bool(params[PARAM_MODEL_CACHE])
            except ValueError as e:
                raise RequestValidationError(
                    f"Invalid {PARAM_MODEL_CACHE} parameter: {e}"
                ) from e

            registry = params.get(PARAM_REGISTRY)

            if registry is None:
                raise RequestValidationError(
                    f"The {PARAM_REGISTRY} parameter must be set"
                )

            store_type = params.get(PARAM_STORE_TYPE)

            if store_type is None:
                raise RequestValidationError(
                    f"The {PARAM_STORE_TYPE} parameter must be set"
                )

        return StorageClassParameters(
            model_cache=model_cache,
            registry=registry,
            store_type=store_type,
            path_pattern=params.get(PARAM_PATH_PATTERN),
        )


@dataclass(frozen=True)
class ProvisionOptions:

    pv_name: str
    pvc: V1PersistentVolumeClaim
    storage_class: V1StorageClass
    selected_node: Optional[V1Node] = None
    """May only be None under a shared file system."""


# ---------------------------------------------------------------------------- #


def create_persistent_volume_source(
    volume_type: VolumeType, path: str
) -> dict[str, Any]:
    """Return the keyword arguments that set the source of a
    V1PersistentVolumeSpec."""

    if volume_type is VolumeType.LOCAL:
        return {"local": V1LocalVolumeSource(path=path)}
    else:
        return {
            "host_path": V1HostPathVolumeSource(
                path=path, type="DirectoryOrCreate"
            )
        }


def create_node_affinity(
    topology: Topology, node: Optional[V1Node]
) -> V1VolumeNodeAffinity:
    """
    Under a shared file system the path is reachable from every node, so the
    volume only requires the node identity label to exist. Otherwise it is
    pinned to the given node.
    """

    if topology is Topology.SHARED_FILESYSTEM:

        requirement = V1NodeSelectorRequirement(key=KEY_NODE, operator="Exists")

    else:

        assert node is not None

        value = (node.metadata.labels or {}).get(KEY_NODE, node.metadata.name)

        requirement = V1NodeSelectorRequirement(
            key=KEY_NODE, operator="In", values=[value]
        )

    return V1VolumeNodeAffinity(
        required=V1NodeSelector(
            node_selector_terms=[
                V1NodeSelectorTerm(match_expressions=[requirement])
            ]
        )
    )


def get_path_and_node(
    pv: V1PersistentVolume, topology: Topology
) -> tuple[str, str]:
    """Return the volume's path, and its node or "" under a shared file
    system."""

    def error(message: str) -> RequestValidationError:
        return RequestValidationError(
            f"Failed to delete volume {pv.metadata.name}: {message}"
        )

    spec = pv.spec

    if spec.host_path is not None and spec.local is None:
        path = spec.host_path.path
    elif spec.local is not None and spec.host_path is None:
        path = spec.local.path
    else:
        raise error("no path set")

    if topology is Topology.SHARED_FILESYSTEM:
        return path, ""  # no affinity, can use any node

    if spec.node_affinity is None:
        raise error("no NodeAffinity set")

    if spec.node_affinity.required is None:
        raise error("no NodeAffinity.Required set")

    for term in spec.node_affinity.required.node_selector_terms or []:
        for expression in term.match_expressions or []:
            if expression.key == KEY_NODE and expression.operator == "In":
                if len(expression.values or []) != 1:
                    raise error("multiple values for the node affinity")
                return path, expression.values[0]

    raise error("cannot find affinited node")


# ---------------------------------------------------------------------------- #


class Provisioner:

    __name: str
    __settings: ConfigStore
    __runner: HelperPodRunner

    def __init__(
        self, name: str, settings: ConfigStore, runner: HelperPodRunner
    ) -> None:

        self.__name = name
        self.__settings = settings
        self.__runner = runner

    @property
    def name(self) -> str:
        """The provisioner name that storage classes refer to."""
        return self.__name

    async def provision(self, options: ProvisionOptions) -> V1PersistentVolume:
        """
        Create the directory for a new volume and return the persistent volume
        object describing it.

        Raises RequestValidationError for requests that cannot be served, and
        DispatchError or HelperPodTimeoutError if the helper pod fails. No
        volume object is returned in those cases.
        """

        pvc = options.pvc
        sc = options.storage_class
        node = options.selected_node

        config = self.__settings.snapshot
        topology = config.topology

        # validate request against topology

        requested = RequestedVolumeProperties.from_pvc(pvc)

        if topology is Topology.PER_NODE_PATHS:

            if pvc.spec.selector is not None:
                raise RequestValidationError(
                    "claim.Spec.Selector is not supported"
                )

            if requested.access_modes - {AccessMode.READ_WRITE_ONCE}:
                raise RequestValidationError(
                    "Only support ReadWriteOnce access mode"
                )

            if node is None:
                raise RequestValidationError(
                    "Configuration error, no node was specified"
                )

        node_name = node.metadata.name if node is not None else ""

        params = StorageClassParameters.from_storage_class(sc)

        volume_type = VolumeType.parse(
            (pvc.metadata.annotations or {}).get(
                ANNOTATION_VOLUME_TYPE,
                (sc.metadata.annotations or {}).get(
                    ANNOTATION_DEFAULT_VOLUME_TYPE, DEFAULT_VOLUME_TYPE
                ),
            )
        )

        # resolve volume path

        base_path = config.path_on_node(node_name)

        folder_name = "_".join(
            [options.pv_name, pvc.metadata.namespace, pvc.metadata.name]
        )

        path = join_path(base_path, folder_name)

        metadata = ClaimMetadata.from_pvc(pvc)

        if params.path_pattern is not None:

            resolved = resolve_path_pattern(params.path_pattern, metadata)

            if resolved.uses_claim_metadata and resolved.path:

                path = join_path(base_path, resolved.path)

                if not path.startswith(clean_path(base_path).rstrip("/") + "/"):
                    raise RequestValidationError(
                        f"Path pattern {params.path_pattern!r} resolved to"
                        f" {resolved.path!r}, which is not under {base_path}"
                    )

        if node_name:
            log(f"Creating volume {options.pv_name} at {node_name}:{path}")
        else:
            log(f"Creating volume {options.pv_name} at {path}")

        # run helper pod

        model_cache = None

        if params.model_cache:
            assert params.registry is not None
            assert params.store_type is not None
            model_cache = ModelCacheOptions(
                registry=params.registry,
                store_type=params.store_type,
                repo_tag=metadata.annotations.get(ANNOTATION_MODEL_REGISTRY),
            )

        await self.__runner.run(
            Action.CREATE,
            SETUP_COMMAND,
            VolumeOptions(
                name=options.pv_name,
                path=path,
                mode=requested.volume_mode.value,
                size_in_bytes=requested.size_in_bytes,
                node=node_name,
                base_path=base_path,
                model_cache=model_cache,
            ),
            config,
        )

        # describe volume

        return V1PersistentVolume(
            api_version="v1",
            kind="PersistentVolume",
            metadata=V1ObjectMeta(
                name=options.pv_name,
                annotations={ANNOTATION_PROVISIONED_BY: self.__name},
            ),
            spec=V1PersistentVolumeSpec(
                persistent_volume_reclaim_policy=sc.reclaim_policy or "Delete",
                access_modes=list(pvc.spec.access_modes),
                volume_mode=VolumeMode.FILE_SYSTEM.value,
                capacity={"storage": requested.capacity},
                storage_class_name=sc.metadata.name,
                claim_ref=V1ObjectReference(
                    api_version="v1",
                    kind="PersistentVolumeClaim",
                    name=pvc.metadata.name,
                    namespace=pvc.metadata.namespace,
                    uid=pvc.metadata.uid,
                ),
                node_affinity=create_node_affinity(topology, node),
                **create_persistent_volume_source(volume_type, path),
            ),
        )

    async def delete(self, pv: V1PersistentVolume) -> None:
        """
        Remove the directory of the given volume, unless its reclaim policy is
        'Retain'.

        Errors are raised with the volume name for context, and the volume
        object should then be left in place.
        """

        name = pv.metadata.name

        config = self.__settings.snapshot
        path, node = get_path_and_node(pv, config.topology)

        if pv.spec.persistent_volume_reclaim_policy == "Retain":
            log(f"Retained volume {name}")
            return

        if node:
            log(f"Deleting volume {name} at {node}:{path}")
        else:
            log(f"Deleting volume {name} at {path}")

        await self.__runner.run(
            Action.DELETE,
            TEARDOWN_COMMAND,
            VolumeOptions(
                name=name,
                path=path,
                mode=pv.spec.volume_mode or VolumeMode.FILE_SYSTEM.value,
                size_in_bytes=parse_and_round_quantity(
                    pv.spec.capacity["storage"], rounding_mode=ROUND_CEILING
                ),
                node=node,
            ),
            config,
        )


# ---------------------------------------------------------------------------- #
