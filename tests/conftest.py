"""
Shared fixtures: an in-memory stand-in for CoreV1Api holding ConfigMaps and pods.
"""
from __future__ import annotations

import os
import sys
from types import SimpleNamespace

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

NAMESPACE = "monitoring"
CONFIGMAP = "file-sd-config"
SD_FILE = "staticConfigurations.json"


class FakeCoreV1Api:
    """Keeps ConfigMap data per (namespace, name); hands out fresh objects on read."""

    def __init__(self, pods=None):
        self.data = {}
        self.pods = pods or []
        self.fail_read = None
        self.fail_create = None
        self.fail_replace = None
        self.fail_list = None
        self.created = []
        self.replaced = []

    def seed(self, text, namespace=NAMESPACE, name=CONFIGMAP, key=SD_FILE):
        self.data[(namespace, name)] = {key: text}

    def text(self, namespace=NAMESPACE, name=CONFIGMAP, key=SD_FILE):
        return self.data[(namespace, name)].get(key)

    def _object(self, namespace, name):
        data = self.data[(namespace, name)]
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data=None if data is None else dict(data),
        )

    def read_namespaced_config_map(self, name, namespace):
        if self.fail_read is not None:
            raise self.fail_read
        if (namespace, name) not in self.data:
            raise ApiException(status=404, reason="Not Found")
        return self._object(namespace, name)

    def create_namespaced_config_map(self, namespace, body):
        if self.fail_create is not None:
            raise self.fail_create
        name = body.metadata.name
        self.data[(namespace, name)] = dict(body.data or {})
        self.created.append((namespace, name))
        return self._object(namespace, name)

    def replace_namespaced_config_map(self, name, namespace, body):
        if self.fail_replace is not None:
            raise self.fail_replace
        self.data[(namespace, name)] = dict(body.data or {})
        self.replaced.append((namespace, name))
        return self._object(namespace, name)

    def list_pod_for_all_namespaces(self, label_selector=None):
        if self.fail_list is not None:
            raise self.fail_list
        return SimpleNamespace(items=list(self.pods))


def make_pod(namespace):
    return SimpleNamespace(metadata=SimpleNamespace(namespace=namespace, name="prometheus-0"))


def wle_event(event_type, name, address, kind="WorkloadEntry", rv="1"):
    return {
        "type": event_type,
        "object": {
            "apiVersion": "networking.istio.io/v1beta1",
            "kind": kind,
            "metadata": {"name": name, "namespace": "vm", "resourceVersion": rv},
            "spec": {"address": address},
        },
    }


@pytest.fixture
def core_api():
    return FakeCoreV1Api()


@pytest.fixture
def store(core_api):
    from wle_file_sd_store import ConfigMapStore
    return ConfigMapStore(core_api, NAMESPACE)
