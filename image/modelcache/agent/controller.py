# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import CancelledError, Task, create_task, sleep
from collections.abc import Callable, Coroutine
from datetime import timedelta
from pathlib import Path
from traceback import format_exc
from typing import Any, Optional

import kopf
from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    CoreV1Api,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
)

from modelcache.shared.config import (
    ANNOTATION_PROVISIONED_BY,
    ANNOTATION_SELECTED_NODE,
    CONFIG_FILE_CHECK_INTERVAL,
    CONTROLLER_RETRY_DELAY,
    KOPF_FINALIZER,
)
from modelcache.shared.kubernetes import (
    create_persistent_volume,
    delete_persistent_volume,
    get_persistent_volume_opt,
    get_storage_class_opt,
    watch_all_persistent_volume_claims,
    watch_all_persistent_volumes,
)
from modelcache.shared.pods import HelperPodRunner, HelperPodTemplate
from modelcache.shared.provisioner import ProvisionOptions, Provisioner
from modelcache.shared.settings import ConfigStore
from modelcache.shared.util import log

# ---------------------------------------------------------------------------- #


def run(
    *,
    provisioner_name: str,
    config: str,
    namespace: str,
    service_account_name: str,
    configmap_name: str,
    helper_pod_file: Path,
    helper_image: Optional[str] = None,
    config_check_interval: timedelta = CONFIG_FILE_CHECK_INTERVAL,
    debug: bool = False,
) -> None:

    # load config and helper pod template, failing early if either is invalid

    config_store = ConfigStore(config)
    template = HelperPodTemplate.from_file(helper_pod_file)

    # create Kubernetes API client object and provisioner

    api_client = ApiClient()

    runner = HelperPodRunner(
        api_client,
        config_store,
        template,
        namespace=namespace,
        service_account_name=service_account_name,
        configmap_name=configmap_name,
        helper_image=helper_image,
    )

    provisioner = Provisioner(provisioner_name, config_store, runner)

    # define handlers

    registry = kopf.OperatorRegistry()

    _define_operator_handlers(
        registry, api_client, provisioner, config_store, config_check_interval
    )

    # run kopf

    kopf.configure(debug=debug, verbose=debug)
    kopf.run(registry=registry, standalone=True, clusterwide=True)


# ---------------------------------------------------------------------------- #
# Operator lifecycle


def _define_operator_handlers(
    registry: kopf.OperatorRegistry,
    api_client: ApiClient,
    provisioner: Provisioner,
    config_store: ConfigStore,
    config_check_interval: timedelta,
) -> None:

    tasks: list[Task[None]] = []

    @kopf.on.login(registry=registry)
    async def on_login(**kwargs: Any) -> Optional[kopf.ConnectionInfo]:
        return kopf.login_via_client(**kwargs)

    @kopf.on.startup(registry=registry)
    async def on_startup(settings: kopf.OperatorSettings, **_: object) -> None:

        # use custom finalizer

        settings.persistence.finalizer = KOPF_FINALIZER

        # don't create events

        settings.posting.enabled = False

        # launch task that periodically reloads the config

        tasks.append(create_task(config_store.watch(config_check_interval)))

        # launch tasks that watch PVCs and PVs

        tasks.append(create_task(handle_claims(api_client, provisioner)))
        tasks.append(create_task(handle_volumes(api_client, provisioner)))

    @kopf.on.cleanup(registry=registry)
    async def on_cleanup(**_: object) -> None:

        # in-flight provisioning and deletion tasks are left to finish or time
        # out on their own

        for task in tasks:
            task.cancel()


# ---------------------------------------------------------------------------- #
# Volume provisioning


async def handle_claims(
    api_client: ApiClient, provisioner: Provisioner
) -> None:
    async def handle(pvc: V1PersistentVolumeClaim) -> None:
        await provision_claim(api_client, provisioner, pvc)

    await _handle_objects(
        watch_fn=watch_all_persistent_volume_claims,
        api_client=api_client,
        handler=handle,
        description="PVC",
    )


async def provision_claim(
    api_client: ApiClient,
    provisioner: Provisioner,
    pvc: V1PersistentVolumeClaim,
) -> None:
    """Provision a volume for the given PVC and create the corresponding PV,
    if the PVC is pending, uses a storage class of this provisioner, and has a
    node selected when its storage class requires one."""

    if pvc.metadata.deletion_timestamp is not None or pvc.spec.volume_name:
        return  # being deleted or already bound

    if pvc.status is not None and pvc.status.phase not in (None, "Pending"):
        return

    if not pvc.spec.storage_class_name:
        return

    sc = await get_storage_class_opt(api_client, pvc.spec.storage_class_name)

    if sc is None or sc.provisioner != provisioner.name:
        return

    node_name = (pvc.metadata.annotations or {}).get(ANNOTATION_SELECTED_NODE)

    if sc.volume_binding_mode == "WaitForFirstConsumer" and node_name is None:
        return  # wait until the scheduler selects a node

    pv_name = f"pvc-{pvc.metadata.uid}"

    if await get_persistent_volume_opt(api_client, pv_name) is not None:
        return  # already provisioned

    node = (
        await CoreV1Api(api_client).read_node(name=node_name)
        if node_name
        else None
    )

    pv = await provisioner.provision(
        ProvisionOptions(
            pv_name=pv_name, pvc=pvc, storage_class=sc, selected_node=node
        )
    )

    await create_persistent_volume(api_client, pv)


# ---------------------------------------------------------------------------- #
# Volume deletion


async def handle_volumes(
    api_client: ApiClient, provisioner: Provisioner
) -> None:
    async def handle(pv: V1PersistentVolume) -> None:
        await delete_volume(api_client, provisioner, pv)

    await _handle_objects(
        watch_fn=watch_all_persistent_volumes,
        api_client=api_client,
        handler=handle,
        description="PV",
    )


async def delete_volume(
    api_client: ApiClient, provisioner: Provisioner, pv: V1PersistentVolume
) -> None:
    """Remove the directory of the given PV and then the PV itself, if the PV
    was provisioned by this provisioner, was released, and has reclaim policy
    'Delete'."""

    annotations = pv.metadata.annotations or {}

    if annotations.get(ANNOTATION_PROVISIONED_BY) != provisioner.name:
        return

    if pv.status is None or pv.status.phase != "Released":
        return

    if pv.spec.persistent_volume_reclaim_policy != "Delete":
        return

    await provisioner.delete(pv)
    await delete_persistent_volume(api_client, pv.metadata.name)


# ---------------------------------------------------------------------------- #


async def _handle_objects(
    watch_fn: Callable[..., Coroutine[Any, Any, None]],
    api_client: ApiClient,
    handler: Callable[[Any], Coroutine[Any, Any, None]],
    description: str,
) -> None:
    """
    Run `handler` for every version of every object, with at most one task
    per object at a time.

    A failed handler is retried after CONTROLLER_RETRY_DELAY until it succeeds
    for the latest version of the object, or the object is deleted.
    """

    # object UID --> object
    latest_state: dict[str, Any] = {}

    # UIDs of objects for which there is a managing task
    has_task: set[str] = set()

    async def callback(obj: Any, exists: bool) -> None:

        if exists:

            latest_state[obj.metadata.uid] = obj

            if obj.metadata.uid not in has_task:
                has_task.add(obj.metadata.uid)
                create_task(manage(obj.metadata.uid))

        else:

            latest_state.pop(obj.metadata.uid, None)

    async def manage(uid: str) -> None:

        handled_version: Optional[str] = None

        while True:

            obj = latest_state.get(uid)

            if obj is None:
                break  # object no longer exists

            if obj.metadata.resource_version == handled_version:
                break  # object hasn't changed

            try:

                await handler(obj)
                handled_version = obj.metadata.resource_version

            except CancelledError:

                break  # cancelled

            except Exception:

                # something failed, retry after a delay

                log(f"Failed to handle {description} {uid}:\n{format_exc()}")
                await sleep(CONTROLLER_RETRY_DELAY.total_seconds())

        has_task.remove(uid)

    while True:

        try:
            await watch_fn(api_client=api_client, callback=callback)
        except CancelledError:
            raise
        except Exception:
            log(format_exc())
            await sleep(CONTROLLER_RETRY_DELAY.total_seconds())


# ---------------------------------------------------------------------------- #
