"""
ConfigMapStore against the in-memory CoreV1Api.
"""
from __future__ import annotations

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from conftest import CONFIGMAP, NAMESPACE, SD_FILE
from wle_file_sd_store import StoreError


def test_get_or_create_returns_existing(core_api, store):
    core_api.seed('[{"targets":["a:1"]}]')
    cm = store.get_or_create()
    assert store.read_text(cm) == '[{"targets":["a:1"]}]'
    assert core_api.created == []


def test_get_or_create_creates_empty_document(core_api, store):
    cm = store.get_or_create()
    assert core_api.created == [(NAMESPACE, CONFIGMAP)]
    assert store.read_text(cm) == "[]"
    assert core_api.text() == "[]"


def test_get_failure_other_than_not_found(core_api, store):
    core_api.fail_read = ApiException(status=403, reason="Forbidden")
    with pytest.raises(StoreError):
        store.get_or_create()
    assert core_api.created == []


def test_get_transport_failure(core_api, store):
    core_api.fail_read = ProtocolError("connection reset")
    with pytest.raises(StoreError):
        store.get_or_create()


def test_create_failure(core_api, store):
    core_api.fail_create = ApiException(status=409, reason="AlreadyExists")
    with pytest.raises(StoreError):
        store.get_or_create()


def test_missing_data_reads_as_blank(core_api, store):
    core_api.data[(NAMESPACE, CONFIGMAP)] = None
    cm = store.get_or_create()
    assert store.read_text(cm) == ""
    store.write_text(cm, "[]")
    assert cm.data == {SD_FILE: "[]"}


def test_update_overwrites_document(core_api, store):
    core_api.seed("[]")
    cm = store.get_or_create()
    store.write_text(cm, '[{"targets":["a:1"]}]')
    store.update(cm)
    assert core_api.text() == '[{"targets":["a:1"]}]'


def test_update_conflict_raises(core_api, store):
    core_api.seed("[]")
    cm = store.get_or_create()
    core_api.fail_replace = ApiException(status=409, reason="Conflict")
    with pytest.raises(StoreError) as exc:
        store.update(cm)
    assert "409" in str(exc.value)
    assert core_api.text() == "[]"
