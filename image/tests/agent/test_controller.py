# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import CancelledError, Event, create_task, sleep
from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from kubernetes_asyncio.client import (  # type: ignore
    V1Node,
    V1ObjectMeta,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeClaimStatus,
    V1PersistentVolumeSpec,
    V1PersistentVolumeStatus,
    V1StorageClass,
)

import modelcache.agent.controller as controller
from modelcache.shared.provisioner import ProvisionOptions

# ---------------------------------------------------------------------------- #

PROVISIONER_NAME = "modelcache.io/local-path"


class FakeProvisioner:

    name = PROVISIONER_NAME

    provisioned: list[ProvisionOptions]
    deleted: list[V1PersistentVolume]
    delete_error: Optional[Exception]

    def __init__(self) -> None:
        self.provisioned = []
        self.deleted = []
        self.delete_error = None

    async def provision(self, options: ProvisionOptions) -> V1PersistentVolume:
        self.provisioned.append(options)
        return V1PersistentVolume(metadata=V1ObjectMeta(name=options.pv_name))

    async def delete(self, pv: V1PersistentVolume) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(pv)


class FakeApi:
    """Stands in for the object accessors used by the controller."""

    storage_classes: dict[str, V1StorageClass]
    volumes: dict[str, V1PersistentVolume]
    created: list[V1PersistentVolume]
    removed: list[str]

    def __init__(self) -> None:
        self.storage_classes = {}
        self.volumes = {}
        self.created = []
        self.removed = []

    async def get_storage_class_opt(
        self, api_client: Any, name: str
    ) -> Optional[V1StorageClass]:
        return self.storage_classes.get(name)

    async def get_persistent_volume_opt(
        self, api_client: Any, name: str
    ) -> Optional[V1PersistentVolume]:
        return self.volumes.get(name)

    async def create_persistent_volume(
        self, api_client: Any, pv: V1PersistentVolume
    ) -> None:
        self.created.append(pv)

    async def delete_persistent_volume(
        self, api_client: Any, name: str
    ) -> None:
        self.removed.append(name)

    async def read_node(self, name: str) -> V1Node:
        return V1Node(metadata=V1ObjectMeta(name=name))


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch) -> FakeApi:

    fake = FakeApi()

    for name in [
        "get_storage_class_opt",
        "get_persistent_volume_opt",
        "create_persistent_volume",
        "delete_persistent_volume",
    ]:
        monkeypatch.setattr(controller, name, getattr(fake, name))

    monkeypatch.setattr(controller, "CoreV1Api", lambda api_client: fake)

    fake.storage_classes["local-path"] = V1StorageClass(
        metadata=V1ObjectMeta(name="local-path"),
        provisioner=PROVISIONER_NAME,
        volume_binding_mode="Immediate",
    )
    fake.storage_classes["local-path-wait"] = V1StorageClass(
        metadata=V1ObjectMeta(name="local-path-wait"),
        provisioner=PROVISIONER_NAME,
        volume_binding_mode="WaitForFirstConsumer",
    )
    fake.storage_classes["other"] = V1StorageClass(
        metadata=V1ObjectMeta(name="other"),
        provisioner="example.com/other",
    )

    return fake


def _pvc(
    storage_class_name: Optional[str] = "local-path",
    *,
    node: Optional[str] = None,
    volume_name: Optional[str] = None,
    phase: str = "Pending",
) -> V1PersistentVolumeClaim:

    return V1PersistentVolumeClaim(
        metadata=V1ObjectMeta(
            name="claim",
            namespace="default",
            uid="1234",
            annotations=(
                {"volume.kubernetes.io/selected-node": node} if node else None
            ),
        ),
        spec=V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=storage_class_name,
            volume_name=volume_name,
        ),
        status=V1PersistentVolumeClaimStatus(phase=phase),
    )


def _pv(
    *,
    provisioned_by: str = PROVISIONER_NAME,
    phase: str = "Released",
    reclaim_policy: str = "Delete",
) -> V1PersistentVolume:

    return V1PersistentVolume(
        metadata=V1ObjectMeta(
            name="pvc-1234",
            annotations={"pv.kubernetes.io/provisioned-by": provisioned_by},
        ),
        spec=V1PersistentVolumeSpec(
            persistent_volume_reclaim_policy=reclaim_policy
        ),
        status=V1PersistentVolumeStatus(phase=phase),
    )


# ---------------------------------------------------------------------------- #


class TestProvisionClaim:
    @pytest.mark.asyncio
    async def test_immediate(self, api: FakeApi) -> None:

        provisioner = FakeProvisioner()

        await controller.provision_claim(None, provisioner, _pvc())

        [options] = provisioner.provisioned
        assert options.pv_name == "pvc-1234"
        assert options.storage_class.metadata.name == "local-path"
        assert options.selected_node is None

        assert [pv.metadata.name for pv in api.created] == ["pvc-1234"]

    @pytest.mark.asyncio
    async def test_wait_for_first_consumer(self, api: FakeApi) -> None:

        provisioner = FakeProvisioner()

        await controller.provision_claim(
            None, provisioner, _pvc("local-path-wait")
        )

        assert provisioner.provisioned == []

        await controller.provision_claim(
            None, provisioner, _pvc("local-path-wait", node="node1")
        )

        [options] = provisioner.provisioned
        assert options.selected_node.metadata.name == "node1"
        assert len(api.created) == 1

    @pytest.mark.parametrize(
        "pvc",
        [
            _pvc(None),
            _pvc("missing"),
            _pvc("other"),
            _pvc(volume_name="pvc-1234"),
            _pvc(phase="Bound"),
        ],
    )
    @pytest.mark.asyncio
    async def test_ignored(
        self, api: FakeApi, pvc: V1PersistentVolumeClaim
    ) -> None:

        provisioner = FakeProvisioner()

        await controller.provision_claim(None, provisioner, pvc)

        assert provisioner.provisioned == []
        assert api.created == []

    @pytest.mark.asyncio
    async def test_already_provisioned(self, api: FakeApi) -> None:

        provisioner = FakeProvisioner()
        api.volumes["pvc-1234"] = _pv(phase="Bound")

        await controller.provision_claim(None, provisioner, _pvc())

        assert provisioner.provisioned == []
        assert api.created == []


# ---------------------------------------------------------------------------- #


class TestDeleteVolume:
    @pytest.mark.asyncio
    async def test_released(self, api: FakeApi) -> None:

        provisioner = FakeProvisioner()

        await controller.delete_volume(None, provisioner, _pv())

        assert [pv.metadata.name for pv in provisioner.deleted] == ["pvc-1234"]
        assert api.removed == ["pvc-1234"]

    @pytest.mark.parametrize(
        "pv",
        [
            _pv(provisioned_by="example.com/other"),
            _pv(phase="Bound"),
            _pv(reclaim_policy="Retain"),
        ],
    )
    @pytest.mark.asyncio
    async def test_ignored(self, api: FakeApi, pv: V1PersistentVolume) -> None:

        provisioner = FakeProvisioner()

        await controller.delete_volume(None, provisioner, pv)

        assert provisioner.deleted == []
        assert api.removed == []

    @pytest.mark.asyncio
    async def test_failure_keeps_volume(self, api: FakeApi) -> None:

        provisioner = FakeProvisioner()
        provisioner.delete_error = RuntimeError("helper pod failed")

        with pytest.raises(RuntimeError):
            await controller.delete_volume(None, provisioner, _pv())

        assert api.removed == []


# ---------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_failed_handler_is_retried(
    monkeypatch: pytest.MonkeyPatch,
) -> None:

    monkeypatch.setattr(controller, "CONTROLLER_RETRY_DELAY", timedelta(0))

    obj = SimpleNamespace(
        metadata=SimpleNamespace(uid="1234", resource_version="1")
    )
    attempts: list[str] = []

    async def handler(o: Any) -> None:
        attempts.append(o.metadata.resource_version)
        if len(attempts) == 1:
            raise RuntimeError("transient failure")

    async def watch_fn(api_client: Any, callback: Any) -> None:
        await callback(obj, True)
        await Event().wait()

    task = create_task(
        controller._handle_objects(
            watch_fn=watch_fn,
            api_client=None,
            handler=handler,
            description="PVC",
        )
    )

    try:
        for _ in range(10):
            await sleep(0)
    finally:
        task.cancel()
        with pytest.raises(CancelledError):
            await task

    assert attempts == ["1", "1"]


# ---------------------------------------------------------------------------- #
