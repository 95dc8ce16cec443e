# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Callable, Coroutine
from decimal import ROUND_HALF_EVEN, Decimal
from http import HTTPStatus
from typing import Any, Optional, TypeVar

from kubernetes.utils import parse_quantity  # type: ignore
from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    CoreV1Api,
    StorageV1Api,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1StorageClass,
)
from kubernetes_asyncio.watch import Watch  # type: ignore

# ---------------------------------------------------------------------------- #


def parse_and_round_quantity(
    quantity: object, *, rounding_mode: str = ROUND_HALF_EVEN
) -> int:

    parsed = parse_quantity(quantity)
    assert isinstance(parsed, Decimal)

    return int(parsed.to_integral_value(rounding=rounding_mode))


# ---------------------------------------------------------------------------- #


async def get_persistent_volume_opt(
    api_client: ApiClient, name: str
) -> Optional[V1PersistentVolume]:

    return await _get_object_opt(
        read_fn=CoreV1Api(api_client).read_persistent_volume, name=name
    )


async def get_storage_class_opt(
    api_client: ApiClient, name: str
) -> Optional[V1StorageClass]:

    return await _get_object_opt(
        read_fn=StorageV1Api(api_client).read_storage_class, name=name
    )


async def _get_object_opt(
    read_fn: Callable[..., Coroutine[Any, Any, Any]], name: str
) -> Optional[Any]:

    try:
        return await read_fn(name=name)
    except ApiException as e:
        if e.status == HTTPStatus.NOT_FOUND:
            return None  # object doesn't exist
        else:
            raise  # some other error occurred, reraise exception


async def create_persistent_volume(
    api_client: ApiClient, pv: V1PersistentVolume
) -> None:
    """Create the given PV, or do nothing if a PV with the same name already
    exists."""

    try:
        await CoreV1Api(api_client).create_persistent_volume(body=pv)
    except ApiException as e:
        if e.status == HTTPStatus.CONFLICT:
            pass  # PV with same name already exists, success
        else:
            raise  # failed due to some other reason, reraise exception


# ---------------------------------------------------------------------------- #


async def delete_persistent_volume(api_client: ApiClient, name: str) -> None:
    """Request deletion of the given PV, ignoring errors due to it no longer
    existing."""

    try:
        await CoreV1Api(api_client).delete_persistent_volume(name=name)
    except ApiException as e:
        if e.status == HTTPStatus.NOT_FOUND:
            pass  # PV doesn't exist, success
        else:
            raise  # some other error occurred, reraise exception


# ---------------------------------------------------------------------------- #

T = TypeVar("T")

WatchAllCallback = Callable[[T, bool], Coroutine[Any, Any, None]]


async def watch_all_persistent_volume_claims(
    api_client: ApiClient, callback: WatchAllCallback[V1PersistentVolumeClaim]
) -> None:

    api = CoreV1Api(api_client)

    await _watch_all_objects(
        api.list_persistent_volume_claim_for_all_namespaces, callback
    )


async def watch_all_persistent_volumes(
    api_client: ApiClient, callback: WatchAllCallback[V1PersistentVolume]
) -> None:

    await _watch_all_objects(
        CoreV1Api(api_client).list_persistent_volume, callback
    )


async def _watch_all_objects(
    list_fn: Callable[..., Coroutine[Any, Any, Any]],
    callback: WatchAllCallback[Any],
) -> None:
    """
    Invoke the callback with every object, first for a full listing and then
    for every watch event, forever. The second callback argument is False for
    deleted objects.

    The callback must be idempotent, as the listing is repeated whenever the
    watch expires, and may miss intermediate object versions, although it is
    eventually invoked with the latest one.
    """

    while True:

        listing = await list_fn()

        for obj in listing.items:
            await callback(obj, True)

        # follow changes from the listed version onward

        async with Watch() as watch:

            events = watch.stream(
                list_fn, resource_version=listing.metadata.resource_version
            )

            try:
                async for event in events:
                    await callback(event["object"], event["type"] != "DELETED")
            except ApiException as e:
                if e.status != HTTPStatus.GONE:
                    raise

            # listed version is too old or the watch ended, list again


# ---------------------------------------------------------------------------- #
