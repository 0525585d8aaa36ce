#!/usr/bin/env python3
"""
Istio WorkloadEntry -> Prometheus file_sd watcher
-------------------------------------------------
• Watches WorkloadEntry objects (VM workloads registered in the mesh) with a
  robust WATCH that reconnects from the last resourceVersion.
• For every ADDED/MODIFIED/DELETED event, re-reads the `file-sd-config`
  ConfigMap, adds or removes the `<address>:15020` target and writes it back.
• Prometheus picks the targets up from `staticConfigurations.json`.

One worker thread drains the watch in order; passes never overlap. Each pass
is a fresh read-modify-write against the ConfigMap, so two writers can still
lose each other's updates. Run a single replica.

Usage:
  python wle_file_sd.py                        # discover Prometheus namespace by label
  python wle_file_sd.py --namespace monitoring --watch-namespace vm-workloads
"""

import os, logging, argparse, signal, sys, threading
from typing import Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from wle_file_sd_store import CONFIGMAP_NAME, SD_FILE_NAME, ConfigMapStore, StoreError
from wle_file_sd_targets import (
    EVENT_KINDS, METRICS_PORT, MalformedDocument, MembershipEvent,
    apply_event, decode_targets, deduplicate, encode_targets,
)

# ────────────  Config  ────────────
SERVICE_NAME = "wle-file-sd"
WLE_GROUP = "networking.istio.io"
WLE_VERSION = "v1beta1"
WLE_PLURAL = "workloadentries"
WLE_KIND = "WorkloadEntry"
PROMETHEUS_SELECTOR = "app=prometheus"
WATCH_TIMEOUT_SEC = 20   # server-side; bounds how long stop() waits on an idle stream
RECONNECT_DELAY_SEC = 2

# ────────────  Logging  ────────────
level = os.getenv("LOGLEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, level, logging.INFO),
                    format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger("wle-file-sd")

tracer = trace.get_tracer(__name__)


class UnexpectedPayload(ValueError):
    """Watch event does not carry a WorkloadEntry."""


class DiscoveryError(RuntimeError):
    """Prometheus namespace could not be determined."""


# ────── OpenTelemetry for the watcher's own spans ──────
def _sanitize(endpoint: str) -> str:
    endpoint = (endpoint or "").strip()
    for suffix in ("/v1/traces", "/v1/metrics"):
        if endpoint.endswith(suffix):
            endpoint = endpoint[:-len(suffix)]
    return endpoint


def setup_tracing() -> bool:
    ep = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or os.getenv("OTEL_COLLECTOR_ENDPOINT")
    if not ep:
        log.info("No OTLP endpoint configured; tracing disabled")
        return False
    tp = TracerProvider(resource=Resource({"service.name": SERVICE_NAME}))
    tp.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=_sanitize(ep), insecure=True)))
    trace.set_tracer_provider(tp)
    log.info("Exporting spans to %s", _sanitize(ep))
    return True


# ───────  Kubernetes clients  ───────
def setup_k8s():
    try:
        config.load_incluster_config()
        log.info("Loaded in-cluster config")
    except ConfigException:
        config.load_kube_config()
        log.info("Loaded kubeconfig")
    return client.CoreV1Api(), client.CustomObjectsApi()


def discover_namespace(core_api: client.CoreV1Api, selector: str = PROMETHEUS_SELECTOR) -> str:
    try:
        pods = core_api.list_pod_for_all_namespaces(label_selector=selector).items
    except (ApiException, HTTPError) as e:
        raise DiscoveryError(f"listing pods with selector '{selector}' failed: {e}") from e
    if not pods:
        raise DiscoveryError(f"no pod matches selector '{selector}'")
    ns = pods[0].metadata.namespace
    log.info("Discovered prometheus deployment in namespace %s", ns)
    return ns


# ───────  WorkloadEntry watch feed  ───────
def to_membership_event(raw: dict) -> MembershipEvent:
    et = raw.get("type")
    obj = raw.get("object")
    if et not in EVENT_KINDS:
        raise UnexpectedPayload(f"event type {et!r}")
    if not isinstance(obj, dict) or obj.get("kind") != WLE_KIND:
        kind = obj.get("kind") if isinstance(obj, dict) else type(obj).__name__
        raise UnexpectedPayload(f"object kind {kind!r}, want {WLE_KIND}")
    name = (obj.get("metadata") or {}).get("name", "<unnamed>")
    address = (obj.get("spec") or {}).get("address")
    if not address:
        raise UnexpectedPayload(f"workload entry {name} has no spec.address")
    return MembershipEvent(et, name, address)


class WorkloadEntryFeed:
    """
    Ordered stream of raw WorkloadEntry watch events.

    Iterating blocks on the API server. A closed stream is reopened from the
    last resourceVersion seen (410 Gone restarts from scratch, which replays
    every entry as ADDED). stop() is observed between events only.
    """

    def __init__(self, custom_api: client.CustomObjectsApi, namespace: str = "",
                 timeout_seconds: int = WATCH_TIMEOUT_SEC,
                 reconnect_delay: float = RECONNECT_DELAY_SEC):
        self.custom_api = custom_api
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.reconnect_delay = reconnect_delay
        self.resource_version: Optional[str] = None
        self._stop = threading.Event()
        self._watch: Optional[watch.Watch] = None

    def _stream_args(self):
        kwargs = dict(group=WLE_GROUP, version=WLE_VERSION, plural=WLE_PLURAL,
                      timeout_seconds=self.timeout_seconds, allow_watch_bookmarks=True)
        if self.resource_version:
            kwargs["resource_version"] = self.resource_version
        if self.namespace:
            kwargs["namespace"] = self.namespace
            return self.custom_api.list_namespaced_custom_object, kwargs
        return self.custom_api.list_cluster_custom_object, kwargs

    def __iter__(self):
        while not self._stop.is_set():
            func, kwargs = self._stream_args()
            self._watch = watch.Watch()
            try:
                for ev in self._watch.stream(func, **kwargs):
                    obj = ev.get("object")
                    if isinstance(obj, dict):
                        rv = (obj.get("metadata") or {}).get("resourceVersion")
                        if rv:
                            self.resource_version = rv
                    if ev.get("type") == "BOOKMARK":
                        continue
                    yield ev
                    if self._stop.is_set():
                        break
            except ApiException as exc:
                if exc.status == 410:
                    log.info("resourceVersion %s expired; restarting watch", self.resource_version)
                    self.resource_version = None
                    continue
                log.warning("workload entry watch failed (%s %s) – reconnect in %s s",
                            exc.status, exc.reason, self.reconnect_delay)
                self._stop.wait(self.reconnect_delay)
            except HTTPError as exc:
                log.warning("workload entry watch closed (%s) – reconnect in %s s",
                            exc, self.reconnect_delay)
                self._stop.wait(self.reconnect_delay)
            finally:
                self._watch.stop()

    def stop(self):
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()


# ───────  Reconciler  ───────
class Reconciler:
    IDLE = "Idle"
    FETCHING = "FetchingDocument"
    MUTATING = "Mutating"
    PERSISTING = "Persisting"

    def __init__(self, store: ConfigMapStore, port: int = METRICS_PORT):
        self.store = store
        self.port = port
        self.state = self.IDLE
        self._lock = threading.Lock()

    def handle(self, event: MembershipEvent) -> bool:
        """Run one read-modify-write pass; False if the store rejected it."""
        with self._lock, tracer.start_as_current_span("reconcile") as span:
            span.set_attribute("k8s.namespace.name", self.store.namespace)
            span.set_attribute("istio.workload_entry", event.name)
            span.set_attribute("istio.workload_address", event.address)
            span.set_attribute("watch.event_type", event.kind)
            try:
                return self._reconcile(event, span)
            except StoreError as e:
                log.error("%s; dropping %s event for %s", e, event.kind, event.name)
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                return False
            finally:
                self.state = self.IDLE

    def _reconcile(self, event: MembershipEvent, span) -> bool:
        self.state = self.FETCHING
        cm = self.store.get_or_create()

        self.state = self.MUTATING
        try:
            groups = decode_targets(self.store.read_text(cm))
        except MalformedDocument as e:
            log.warning("static configuration json parsing failed (%s); starting from an empty list", e)
            span.add_event("malformed-document", {"error": str(e)})
            groups = []
        groups = deduplicate(groups)
        groups = apply_event(groups, event, self.port)

        self.state = self.PERSISTING
        groups = deduplicate(groups)
        self.store.write_text(cm, encode_targets(groups))
        self.store.update(cm)
        span.set_attribute("file_sd.target_groups", len(groups))
        log.debug("Persisted %d target group(s) to %s/%s",
                  len(groups), self.store.namespace, self.store.name)
        return True


# ───────  Lifecycle  ───────
class Watcher:
    def __init__(self, core_api: client.CoreV1Api, feed: WorkloadEntryFeed,
                 namespace: str = "", selector: str = PROMETHEUS_SELECTOR,
                 configmap: str = CONFIGMAP_NAME, sd_file: str = SD_FILE_NAME,
                 port: int = METRICS_PORT):
        self.core_api = core_api
        self.feed = feed
        self.namespace = namespace
        self.selector = selector
        self.configmap = configmap
        self.sd_file = sd_file
        self.port = port
        self.reconciler: Optional[Reconciler] = None
        self.failed = False
        self._shutdown = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def start(self):
        if not self.namespace:
            self.namespace = discover_namespace(self.core_api, self.selector)
        store = ConfigMapStore(self.core_api, self.namespace, self.configmap, self.sd_file)
        self.reconciler = Reconciler(store, self.port)
        self._worker = threading.Thread(target=self._run, name="wle-watcher", daemon=True)
        self._worker.start()
        log.info("Watching workload entries; targets go to %s/%s[%s]",
                 self.namespace, self.configmap, self.sd_file)

    def _run(self):
        try:
            for raw in self.feed:
                try:
                    event = to_membership_event(raw)
                except UnexpectedPayload as e:
                    log.warning("unexpected type: %s; skipping event", e)
                    continue
                self.reconciler.handle(event)
        except Exception:
            self.failed = True
            log.exception("workload entry worker crashed")
        else:
            log.info("workload entry watch stopped")
        finally:
            self._shutdown.set()

    def _on_signal(self, signum, frame):
        log.info("Received %s; shutting down", signal.Signals(signum).name)
        self._shutdown.set()

    def wait_signal(self):
        """Block until SIGINT/SIGTERM, or until the worker exits on its own."""
        signal.signal(signal.SIGINT, self._on_signal)
        signal.signal(signal.SIGTERM, self._on_signal)
        self._shutdown.wait()

    def is_alive(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def stop(self, timeout: Optional[float] = None):
        self.feed.stop()
        self._shutdown.set()
        if self._worker is not None:
            self._worker.join(timeout)


# ───────  main  ───────
def main(argv=None):
    ap = argparse.ArgumentParser("Publish Istio WorkloadEntry addresses as Prometheus file_sd targets")
    ap.add_argument("--namespace", default=os.getenv("FILE_SD_NAMESPACE", ""),
                    help="Namespace of the file_sd ConfigMap; discovered from --prometheus-selector if omitted")
    ap.add_argument("--watch-namespace", default=os.getenv("WATCH_NAMESPACE", ""),
                    help="Namespace to watch for WorkloadEntries (default: all)")
    ap.add_argument("--prometheus-selector", default=os.getenv("PROMETHEUS_SELECTOR", PROMETHEUS_SELECTOR),
                    help=f"Pod label selector used to find Prometheus (default: {PROMETHEUS_SELECTOR})")
    ap.add_argument("--configmap", default=CONFIGMAP_NAME, help=f"ConfigMap name (default: {CONFIGMAP_NAME})")
    ap.add_argument("--sd-file", default=SD_FILE_NAME, help=f"ConfigMap key (default: {SD_FILE_NAME})")
    ap.add_argument("--metrics-port", type=int, default=METRICS_PORT,
                    help=f"Port appended to workload addresses (default: {METRICS_PORT})")
    args = ap.parse_args(argv)

    setup_tracing()

    try:
        core_api, custom_api = setup_k8s()
    except (ConfigException, OSError) as e:
        log.error("Loading cluster credentials failed: %s", e)
        sys.exit(1)

    feed = WorkloadEntryFeed(custom_api, args.watch_namespace)
    watcher = Watcher(core_api, feed, namespace=args.namespace,
                      selector=args.prometheus_selector, configmap=args.configmap,
                      sd_file=args.sd_file, port=args.metrics_port)
    try:
        watcher.start()
    except DiscoveryError as e:
        log.error("Failed to find prometheus deployment namespace: %s", e)
        sys.exit(1)

    log.info("Waiting to be stopped")
    watcher.wait_signal()
    watcher.stop()
    if watcher.failed:
        sys.exit(1)
    log.info("Shutdown complete.")


if __name__ == "__main__":
    main()
