# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from kubernetes_asyncio.client import ApiException  # type: ignore

from modelcache.shared.pods import HelperPodRunner, HelperPodTemplate
from modelcache.shared.settings import ConfigStore

# ---------------------------------------------------------------------------- #

HELPER_POD_YAML = """
apiVersion: v1
kind: Pod
metadata:
  name: helper-pod
spec:
  containers:
    - name: helper-pod
      image: busybox
      imagePullPolicy: IfNotPresent
"""

PER_NODE_CONFIG = '{"nodePathMap": [{"node": "node1", "paths": ["/data"]}]}'
SHARED_CONFIG = '{"sharedFileSystemPath": "/shared"}'


class FakeCluster:
    """
    Stands in for `CoreV1Api`, keeping helper pods in memory.

    Every pod reports `phase` when read. `polls` counts reads of pods that
    exist, which excludes the existence check preceding pod creation.
    """

    pods: dict[str, Any]
    phase: Optional[str]
    create_error: Optional[int]
    delete_error: Optional[int]
    created: list[str]
    deleted: list[str]
    polls: int

    def __init__(self) -> None:
        self.pods = {}
        self.phase = "Succeeded"
        self.create_error = None
        self.delete_error = None
        self.created = []
        self.deleted = []
        self.polls = 0

    async def read_namespaced_pod(self, name: str, namespace: str) -> Any:

        if name not in self.pods:
            raise ApiException(status=404, reason="Not Found")

        self.polls += 1

        return SimpleNamespace(status=SimpleNamespace(phase=self.phase))

    async def create_namespaced_pod(self, body: Any, namespace: str) -> Any:

        if self.create_error is not None:
            raise ApiException(status=self.create_error, reason="Error")

        name = body["metadata"]["name"]

        if name in self.pods:
            raise ApiException(status=409, reason="Conflict")

        self.pods[name] = body
        self.created.append(name)

        return body

    async def delete_namespaced_pod(self, name: str, namespace: str) -> None:

        if self.delete_error is not None:
            raise ApiException(status=self.delete_error, reason="Error")

        if name not in self.pods:
            raise ApiException(status=404, reason="Not Found")

        del self.pods[name]
        self.deleted.append(name)


# ---------------------------------------------------------------------------- #


@pytest.fixture
def cluster(monkeypatch: pytest.MonkeyPatch) -> FakeCluster:

    fake = FakeCluster()

    monkeypatch.setattr(
        "modelcache.shared.pods.CoreV1Api", lambda api_client: fake
    )

    return fake


@pytest.fixture
def template() -> HelperPodTemplate:
    return HelperPodTemplate.from_yaml(HELPER_POD_YAML)


@pytest.fixture
def make_runner(
    template: HelperPodTemplate,
) -> Callable[..., HelperPodRunner]:
    """Returns a function that creates a runner for the given JSON config. The
    runner polls without sleeping."""

    def make(
        config: str, helper_image: Optional[str] = None
    ) -> HelperPodRunner:
        return HelperPodRunner(
            None,
            ConfigStore(config),
            template,
            namespace="local-path-storage",
            service_account_name="local-path-provisioner-service-account",
            configmap_name="local-path-config",
            helper_image=helper_image,
            poll_interval=timedelta(0),
        )

    return make


# ---------------------------------------------------------------------------- #
