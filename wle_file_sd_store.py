"""
ConfigMap holding the Prometheus file_sd document.

Prometheus mounts the ConfigMap and re-reads `staticConfigurations.json`
whenever it changes. Writes are blind replaces of the object that was read:
the API server may still reject them on a stale resourceVersion, which
surfaces as a StoreError and is never retried here.
"""

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from wle_file_sd_targets import encode_targets

log = logging.getLogger("wle-file-sd")

CONFIGMAP_NAME = "file-sd-config"
SD_FILE_NAME = "staticConfigurations.json"


class StoreError(Exception):
    """Reading, creating or replacing the ConfigMap failed."""


class ConfigMapStore:
    def __init__(self, core_api: client.CoreV1Api, namespace: str,
                 name: str = CONFIGMAP_NAME, key: str = SD_FILE_NAME):
        self.core_api = core_api
        self.namespace = namespace
        self.name = name
        self.key = key

    def get_or_create(self) -> client.V1ConfigMap:
        try:
            return self.core_api.read_namespaced_config_map(self.name, self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise StoreError(f"get config map {self.namespace}/{self.name} failed: "
                                 f"{e.status} {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"get config map {self.namespace}/{self.name} failed: {e}") from e

        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=self.name),
            data={self.key: encode_targets([])},
        )
        try:
            created = self.core_api.create_namespaced_config_map(self.namespace, body)
        except ApiException as e:
            raise StoreError(f"create config map {self.namespace}/{self.name} failed: "
                             f"{e.status} {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"create config map {self.namespace}/{self.name} failed: {e}") from e
        log.info("Created config map %s/%s", self.namespace, self.name)
        return created

    def read_text(self, config_map: client.V1ConfigMap) -> str:
        return (config_map.data or {}).get(self.key, "")

    def write_text(self, config_map: client.V1ConfigMap, text: str):
        if config_map.data is None:
            config_map.data = {}
        config_map.data[self.key] = text

    def update(self, config_map: client.V1ConfigMap):
        try:
            self.core_api.replace_namespaced_config_map(self.name, self.namespace, config_map)
        except ApiException as e:
            raise StoreError(f"update config map {self.namespace}/{self.name} failed: "
                             f"{e.status} {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"update config map {self.namespace}/{self.name} failed: {e}") from e
