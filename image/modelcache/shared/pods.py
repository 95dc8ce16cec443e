# ---------------------------------------------------------------------------- #

from __future__ import annotations

import hashlib
import posixpath
from asyncio import sleep
from collections.abc import Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum, unique
from http import HTTPStatus
from pathlib import Path
from typing import Any, Optional

import yaml
from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    CoreV1Api,
)

from modelcache.shared.config import (
    DEFAULT_MODEL_MOUNT,
    ENV_REGISTRY,
    ENV_REPO_TAG,
    ENV_STORE_TYPE,
    ENV_VOL_DIR,
    ENV_VOL_MODE,
    ENV_VOL_SIZE,
    HELPER_DATA_VOLUME_NAME,
    HELPER_POD_NAME_MAX_LENGTH,
    HELPER_POD_POLL_INTERVAL,
    HELPER_SCRIPT_DIR,
    HELPER_SCRIPT_VOLUME_NAME,
)
from modelcache.shared.errors import (
    DispatchError,
    HelperPodTimeoutError,
    RequestValidationError,
)
from modelcache.shared.settings import ConfigStore, NodePathConfig, Topology
from modelcache.shared.util import clean_path, join_path, log

# ---------------------------------------------------------------------------- #


@unique
class Action(Enum):
    CREATE = "create"
    DELETE = "delete"


SETUP_COMMAND = ("/bin/sh", f"{HELPER_SCRIPT_DIR}/setup")
TEARDOWN_COMMAND = ("/bin/sh", f"{HELPER_SCRIPT_DIR}/teardown")


@dataclass(frozen=True)
class ModelCacheOptions:
    registry: str
    store_type: str
    repo_tag: Optional[str] = None
    """Taken from the claim's 'model/registry' annotation, if present."""


@dataclass(frozen=True)
class VolumeOptions:

    name: str
    path: str
    mode: str
    size_in_bytes: int
    node: str = ""
    """Empty under a shared file system."""

    base_path: str = ""
    """The base path `path` was derived from. Only used for model cache
    volumes, to lay out the mount under DEFAULT_MODEL_MOUNT."""

    model_cache: Optional[ModelCacheOptions] = None


# ---------------------------------------------------------------------------- #


def split_volume_path(path: str) -> tuple[str, str]:
    """
    Clean the given absolute path and split it into its parent directory and
    the volume directory name.

    Raises RequestValidationError if `path` is relative.
    """

    if not posixpath.isabs(path):
        raise RequestValidationError(f"Volume path {path} is not absolute")

    return posixpath.split(clean_path(path))


def helper_pod_name(
    template_name: str, action: Action, options: VolumeOptions
) -> str:
    """
    Model cache helper pods are named after the node and a hash of the volume
    path, so that requests for the same path on the same node share a single
    pod. Other helper pods are named after the volume.

    Names longer than HELPER_POD_NAME_MAX_LENGTH are truncated, which may make
    two long names collide.
    """

    if options.model_cache is not None:
        digest = hashlib.sha256(clean_path(options.path).encode()).hexdigest()
        name = f"cache-{action.value}-{options.node}-{digest[:8]}"
    else:
        name = f"{template_name}-{action.value}-{options.name}"

    return name[:HELPER_POD_NAME_MAX_LENGTH]


def _add_volume_mount(
    mounts: list[dict[str, Any]], name: str, mount_path: str
) -> dict[str, Any]:
    """Return the mount with the given name, adding it if missing. A mount
    already declared by the template keeps its mount path."""

    for mount in mounts:
        if mount.get("name") == name:
            if not mount.get("mountPath"):
                mount["mountPath"] = mount_path
            return mount

    mount = {"name": name, "mountPath": mount_path}
    mounts.append(mount)

    return mount


# ---------------------------------------------------------------------------- #


class HelperPodTemplate:
    """Pod manifest that helper pods are instantiated from. The wrapped
    manifest is never mutated."""

    @staticmethod
    def from_file(path: Path) -> HelperPodTemplate:
        return HelperPodTemplate.from_yaml(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_yaml(text: str) -> HelperPodTemplate:

        # deep copy while ensuring that only primitive-ish types are used

        template = yaml.safe_load(text)

        if not isinstance(template, dict):
            raise ValueError("Helper pod template must be a mapping")

        if not set(template.keys()).issubset(
            {"apiVersion", "kind", "metadata", "spec"}
        ):
            raise ValueError(
                "May only specify fields 'apiVersion', 'kind', 'metadata',"
                " and 'spec'"
            )

        if template.get("kind", "Pod") != "Pod":
            raise ValueError("Helper pod template must be of kind 'Pod'")

        spec = template.get("spec")

        if not isinstance(spec, dict):
            raise ValueError("Helper pod template must specify 'spec'")

        containers = spec.get("containers")

        if not isinstance(containers, list) or len(containers) != 1:
            raise ValueError(
                "Helper pod template must specify exactly one container"
            )

        return HelperPodTemplate(template)

    __template: Any

    def __init__(self, template: Any) -> None:
        """PRIVATE, DO NOT USE."""
        self.__template = template

    @property
    def name(self) -> str:
        """Base name of helper pods instantiated from this template."""
        metadata = self.__template.get("metadata") or {}
        return str(metadata.get("name", "helper-pod"))

    def instantiate(
        self,
        *,
        pod_name: str,
        namespace: str,
        node_name: str,
        service_account_name: str,
        configmap_name: str,
        script_key: str,
        script_path: str,
        parent_dir: str,
        data_mount_path: str,
        command: Sequence[str],
        env: Mapping[str, str],
        args: Sequence[str],
        image: Optional[str] = None,
    ) -> dict[str, Any]:
        """Return a new pod definition. Raises RequestValidationError if the
        data mount path would be the root directory."""

        pod = deepcopy(self.__template)

        pod["apiVersion"] = "v1"
        pod["kind"] = "Pod"

        # set pod name and namespace

        metadata = pod.setdefault("metadata", {})
        metadata["name"] = pod_name
        metadata["namespace"] = namespace
        metadata.pop("generateName", None)

        spec = pod["spec"]
        container = spec["containers"][0]

        # mount the volume's parent directory and the script

        mounts = container.setdefault("volumeMounts", [])

        script_mount = _add_volume_mount(
            mounts, HELPER_SCRIPT_VOLUME_NAME, HELPER_SCRIPT_DIR
        )
        script_mount["mountPath"] = HELPER_SCRIPT_DIR

        data_mount = _add_volume_mount(
            mounts, HELPER_DATA_VOLUME_NAME, data_mount_path
        )

        if not posixpath.isabs(data_mount["mountPath"]) or not data_mount[
            "mountPath"
        ].rstrip("/"):
            raise RequestValidationError(
                f"Invalid data mount path {data_mount['mountPath']}: parent"
                " dir is the root directory or relative"
            )

        spec.setdefault("volumes", []).extend(
            [
                {
                    "name": HELPER_DATA_VOLUME_NAME,
                    "hostPath": {
                        "path": parent_dir,
                        "type": "DirectoryOrCreate",
                    },
                },
                {
                    "name": HELPER_SCRIPT_VOLUME_NAME,
                    "configMap": {
                        "name": configmap_name,
                        "items": [{"key": script_key, "path": script_path}],
                    },
                },
            ]
        )

        # set node on which to run the pod

        if node_name:
            spec["nodeName"] = node_name

        spec["serviceAccountName"] = service_account_name
        spec["restartPolicy"] = "Never"
        spec.setdefault("tolerations", []).append({"operator": "Exists"})

        # set up the container

        container["command"] = list(command)
        container["args"] = list(args)
        container.setdefault("env", []).extend(
            {"name": key, "value": value} for (key, value) in env.items()
        )
        container["securityContext"] = {"privileged": True}

        if image is not None:
            container["image"] = image

        return pod


# ---------------------------------------------------------------------------- #


class HelperPodRunner:
    """
    Runs a short-lived helper pod on a node to create or delete a volume
    directory, and waits for it to succeed.

    Each `run()` call is independent; the only shared state is the config
    snapshot, which is only read.
    """

    __api_client: ApiClient
    __settings: ConfigStore
    __template: HelperPodTemplate
    __namespace: str
    __service_account_name: str
    __configmap_name: str
    __helper_image: Optional[str]
    __poll_interval: timedelta

    def __init__(
        self,
        api_client: ApiClient,
        settings: ConfigStore,
        template: HelperPodTemplate,
        *,
        namespace: str,
        service_account_name: str,
        configmap_name: str,
        helper_image: Optional[str] = None,
        poll_interval: timedelta = HELPER_POD_POLL_INTERVAL,
    ) -> None:

        self.__api_client = api_client
        self.__settings = settings
        self.__template = template
        self.__namespace = namespace
        self.__service_account_name = service_account_name
        self.__configmap_name = configmap_name
        self.__helper_image = helper_image
        self.__poll_interval = poll_interval

    def build_pod(
        self,
        action: Action,
        command: Sequence[str],
        options: VolumeOptions,
        config: Optional[NodePathConfig] = None,
    ) -> dict[str, Any]:
        """Return the helper pod definition for the given request. `config`
        defaults to the current config snapshot."""

        if config is None:
            config = self.__settings.snapshot

        if (
            not options.name
            or not options.path
            or (
                config.topology is Topology.PER_NODE_PATHS
                and not options.node
            )
        ):
            raise RequestValidationError(
                f"Failed to {action.value} volume {options.name}: invalid"
                " empty name or path or node"
            )

        try:
            parent_dir, volume_dir = split_volume_path(options.path)
        except RequestValidationError as e:
            raise RequestValidationError(
                f"Failed to {action.value} volume {options.name}: {e}"
            ) from e

        if not volume_dir:
            raise RequestValidationError(
                f"Failed to {action.value} volume {options.name}: invalid path"
                f" {options.path}: cannot find volume dir"
            )

        # pick the script

        if action is Action.DELETE:
            script_key = "teardown"
        elif options.model_cache is not None:
            script_key = "setupcache"
        else:
            script_key = "setup"

        # lay out the volume inside the pod

        if options.model_cache is not None:
            model_path = parent_dir.removeprefix(options.base_path)
            data_mount_path = join_path(DEFAULT_MODEL_MOUNT, model_path)
        else:
            data_mount_path = parent_dir

        vol_dir = join_path(data_mount_path, volume_dir)

        env = {
            ENV_VOL_DIR: vol_dir,
            ENV_VOL_MODE: options.mode,
            ENV_VOL_SIZE: str(options.size_in_bytes),
        }

        if options.model_cache is not None:
            env[ENV_REGISTRY] = options.model_cache.registry
            env[ENV_STORE_TYPE] = options.model_cache.store_type
            if options.model_cache.repo_tag is not None:
                env[ENV_REPO_TAG] = options.model_cache.repo_tag

        try:

            return self.__template.instantiate(
                pod_name=helper_pod_name(self.__template.name, action, options),
                namespace=self.__namespace,
                node_name=options.node,
                service_account_name=self.__service_account_name,
                configmap_name=self.__configmap_name,
                script_key=script_key,
                script_path=posixpath.basename(command[-1]),
                parent_dir=parent_dir,
                data_mount_path=data_mount_path,
                command=command,
                env=env,
                args=[
                    "-p",
                    vol_dir,
                    "-s",
                    str(options.size_in_bytes),
                    "-m",
                    options.mode,
                ],
                image=(
                    self.__helper_image
                    if options.model_cache is not None
                    else None
                ),
            )

        except RequestValidationError as e:
            raise RequestValidationError(
                f"Failed to {action.value} volume {options.name}: {e}"
            ) from e

    async def run(
        self,
        action: Action,
        command: Sequence[str],
        options: VolumeOptions,
        config: Optional[NodePathConfig] = None,
    ) -> None:
        """
        Run a helper pod for the given volume and wait until it succeeds.

        If a pod with the same name already exists, it is assumed to be doing
        the same work and is waited on instead, and is not deleted afterwards.
        A pod created by this call is always deleted once waiting ends.

        The whole call sees a single config, `config` if given and the current
        snapshot otherwise.
        """

        if config is None:
            config = self.__settings.snapshot

        pod = self.build_pod(action, command, options, config)
        pod_name = pod["metadata"]["name"]

        api = CoreV1Api(self.__api_client)

        # check whether the pod already exists due to some previous request

        if await self.__pod_exists(action, options, pod_name):

            log(
                f"Helper pod {pod_name} exists in namespace"
                f" {self.__namespace}, skip creating it"
            )

            await self.__wait_until_succeeded(
                action, options, pod_name, config.cmd_timeout_seconds
            )

        else:

            log(f"Create the helper pod {pod_name} into {self.__namespace}")

            try:
                await api.create_namespaced_pod(
                    body=pod, namespace=self.__namespace
                )
            except ApiException as e:
                if e.status != HTTPStatus.CONFLICT:
                    raise DispatchError(
                        f"Failed to {action.value} volume {options.name}:"
                        f" failed to create helper pod {pod_name}: {e.reason}"
                    ) from e

            try:
                await self.__wait_until_succeeded(
                    action, options, pod_name, config.cmd_timeout_seconds
                )
            finally:
                await self.__delete_pod(pod_name)

        if options.node:
            log(
                f"Volume {options.name} has been {action.value}d on"
                f" {options.node}:{options.path}"
            )
        else:
            log(
                f"Volume {options.name} has been {action.value}d on"
                f" {options.path}"
            )

    async def __pod_exists(
        self, action: Action, options: VolumeOptions, pod_name: str
    ) -> bool:

        try:
            await CoreV1Api(self.__api_client).read_namespaced_pod(
                name=pod_name, namespace=self.__namespace
            )
        except ApiException as e:
            if e.status == HTTPStatus.NOT_FOUND:
                return False
            raise DispatchError(
                f"Failed to {action.value} volume {options.name}: failed to"
                f" get helper pod {pod_name}: {e.reason}"
            ) from e

        return True

    async def __wait_until_succeeded(
        self,
        action: Action,
        options: VolumeOptions,
        pod_name: str,
        timeout_seconds: int,
    ) -> None:

        api = CoreV1Api(self.__api_client)

        for _ in range(timeout_seconds):

            try:
                pod = await api.read_namespaced_pod(
                    name=pod_name, namespace=self.__namespace
                )
            except ApiException as e:
                raise DispatchError(
                    f"Failed to {action.value} volume {options.name}: failed"
                    f" to get helper pod {pod_name}: {e.reason}"
                ) from e

            phase = pod.status.phase if pod.status is not None else None

            if phase == "Succeeded":
                return
            elif phase == "Failed":
                raise DispatchError(
                    f"Failed to {action.value} volume {options.name}: helper"
                    f" pod {pod_name} failed"
                )

            await sleep(self.__poll_interval.total_seconds())

        raise HelperPodTimeoutError(
            f"Failed to {action.value} volume {options.name}: {action.value}"
            f" process timeout after {timeout_seconds} seconds",
            seconds=timeout_seconds,
        )

    async def __delete_pod(self, pod_name: str) -> None:

        try:
            await CoreV1Api(self.__api_client).delete_namespaced_pod(
                name=pod_name, namespace=self.__namespace
            )
        except ApiException as e:
            log(f"Unable to delete the helper pod {pod_name}: {e.reason}")


# ---------------------------------------------------------------------------- #
