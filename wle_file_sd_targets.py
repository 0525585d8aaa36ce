"""
Prometheus file_sd target list helpers.

The persisted document is a JSON array of target groups:

    [{"targets": ["10.0.0.5:15020"]}, {"targets": ["10.0.0.6:15020"]}]

Functions take a list of groups and hand back a new one without touching the
store (they only log), so the reconciler can run them between a store read
and a write.
"""

import json
import logging
from typing import Dict, List, NamedTuple

log = logging.getLogger("wle-file-sd")

# Istio sidecar merged-metrics port
METRICS_PORT = 15020

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
EVENT_KINDS = (ADDED, MODIFIED, DELETED)

TargetGroup = Dict[str, List[str]]


class MalformedDocument(ValueError):
    """Document text is not a valid file_sd target list."""


class MembershipEvent(NamedTuple):
    kind: str
    name: str
    address: str


def format_target(address: str, port: int = METRICS_PORT) -> str:
    return f"{address}:{port}"


# ───────  Codec  ───────
def encode_targets(groups: List[TargetGroup]) -> str:
    return json.dumps([{"targets": list(g["targets"])} for g in groups or []],
                      separators=(",", ":"))


def decode_targets(text: str) -> List[TargetGroup]:
    if text is None or not text.strip():
        return []
    try:
        raw = json.loads(text)
    except ValueError as e:
        raise MalformedDocument(f"invalid JSON: {e}") from e
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise MalformedDocument(f"expected a JSON array, got {type(raw).__name__}")

    groups = []
    for i, item in enumerate(raw):
        targets = item.get("targets") if isinstance(item, dict) else None
        if not isinstance(targets, list) or not all(isinstance(t, str) for t in targets):
            raise MalformedDocument(f"group {i} has no list of string targets")
        groups.append({"targets": list(targets)})
    return groups


# ───────  Dedup  ───────
def deduplicate(groups: List[TargetGroup]) -> List[TargetGroup]:
    """
    Drop every group that repeats an address already seen in this pass.

    The seen set is shared across groups and is fed by rejected groups too, so
    a group is all-or-nothing: one repeated address discards the whole group.
    Groups are written with a single target, which makes this equivalent to
    per-address dedup in practice.
    """
    seen = set()
    kept = []
    for group in groups:
        repeated = False
        for addr in group.get("targets", []):
            if addr in seen:
                repeated = True
                continue
            seen.add(addr)
        if repeated:
            log.debug("dropping duplicated target group %s", group.get("targets"))
            continue
        kept.append({"targets": list(group.get("targets", []))})
    return kept


# ───────  Event application  ───────
def has_target(groups: List[TargetGroup], target: str) -> bool:
    return any(target in g.get("targets", []) for g in groups)


def apply_event(groups: List[TargetGroup], event: MembershipEvent,
                port: int = METRICS_PORT) -> List[TargetGroup]:
    result = [{"targets": list(g.get("targets", []))} for g in groups]
    target = format_target(event.address, port)

    if event.kind == DELETED:
        for i, group in enumerate(result):
            if event.address in group["targets"] or target in group["targets"]:
                del result[i]
                log.info("Deleted VM workload %s (%s)", event.name, target)
                break
        else:
            log.info("VM workload %s (%s) not registered; nothing to delete", event.name, target)
        return result

    if has_target(result, target):
        log.info("VM workload %s exists (%s)", event.name, target)
        return result
    result.append({"targets": [target]})
    log.info("Registered VM workload %s (%s)", event.name, target)
    return result
