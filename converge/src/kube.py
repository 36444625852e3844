from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator, Mapping
from typing import Any, NamedTuple, TypeVar

from kubernetes import client, config, watch
from kubernetes.client import CustomObjectsApi
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from converge.src.errors import (
    AccessDeniedError,
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceVersionTooOldError,
    StoreError,
    StoreUnavailableError,
)
from converge.src.records import (
    OwnerReference,
    ReconcileKey,
    ResourceRecord,
    format_timestamp,
    parse_timestamp,
)
from converge.src.store import ADDED, BOOKMARK, DELETED, MODIFIED, ListResult, WatchEvent

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


class KindMapping(NamedTuple):
    """Where a kind lives in the Kubernetes API."""

    group: str
    version: str
    plural: str
    status_subresource: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


BUILTIN_KINDS: dict[str, KindMapping] = {
    "Lease": KindMapping("coordination.k8s.io", "v1", "leases", status_subresource=False),
}


def translate_api_exception(exc: ApiException, target: str) -> StoreError:
    """Map an API server response onto the store error taxonomy."""
    status = exc.status
    detail = f"{target}: {exc.status} {exc.reason}"
    if status == 404:
        return NotFoundError(detail)
    if status == 409:
        if "AlreadyExists" in str(exc.body or ""):
            return AlreadyExistsError(detail)
        return ConflictError(detail)
    if status == 410:
        return ResourceVersionTooOldError(detail)
    if status in {401, 403}:
        return AccessDeniedError(detail)
    return StoreUnavailableError(detail)


def record_to_body(
    record: ResourceRecord,
    mapping: KindMapping,
    owner_api_version: Callable[[str], str],
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": record.name, "namespace": record.namespace}
    if record.resource_version:
        metadata["resourceVersion"] = record.resource_version
    if record.labels:
        metadata["labels"] = dict(record.labels)
    if record.finalizers:
        metadata["finalizers"] = list(record.finalizers)
    if record.owner_references:
        metadata["ownerReferences"] = [
            {
                "apiVersion": owner_api_version(ref.kind),
                "kind": ref.kind,
                "name": ref.name,
                "uid": ref.uid,
                "controller": ref.controller,
            }
            for ref in record.owner_references
        ]
    body: dict[str, Any] = {
        "apiVersion": mapping.api_version,
        "kind": record.kind,
        "metadata": metadata,
        "spec": dict(record.spec),
    }
    if mapping.status_subresource:
        body["status"] = dict(record.status)
    if record.kind == "Lease" and body["spec"].get("leaseDurationSeconds") is not None:
        body["spec"]["leaseDurationSeconds"] = int(math.ceil(body["spec"]["leaseDurationSeconds"]))
    return body


def body_to_record(body: Mapping[str, Any], kind: str) -> ResourceRecord:
    metadata = body.get("metadata") or {}
    spec = dict(body.get("spec") or {})
    if kind == "Lease":
        for field_name in ("acquireTime", "renewTime"):
            spec[field_name] = format_timestamp(parse_timestamp(spec.get(field_name)))
    return ResourceRecord(
        kind=kind,
        namespace=metadata.get("namespace") or "",
        name=metadata.get("name") or "",
        spec=spec,
        status=dict(body.get("status") or {}),
        resource_version=metadata.get("resourceVersion"),
        uid=metadata.get("uid"),
        generation=int(metadata.get("generation") or 0),
        labels=dict(metadata.get("labels") or {}),
        finalizers=list(metadata.get("finalizers") or []),
        owner_references=[
            OwnerReference.from_dict(ref) for ref in metadata.get("ownerReferences") or []
        ],
        creation_timestamp=parse_timestamp(metadata.get("creationTimestamp")),
        deletion_timestamp=parse_timestamp(metadata.get("deletionTimestamp")),
    )


class KubernetesStore:
    """:class:`~converge.src.store.StateStore` over the Kubernetes API.

    Every kind is served through ``CustomObjectsApi``.  Kinds without an
    explicit mapping are assumed to be custom resources in ``group/version``
    with the lower-cased plural ``<kind>s``.  ``Lease`` maps to
    ``coordination.k8s.io/v1`` so leader election uses the cluster's own
    Lease objects.

    All requests carry ``request_timeout_seconds`` so a hung API server turns
    into :class:`StoreUnavailableError` well inside a lease's renew deadline.
    """

    def __init__(
        self,
        api: CustomObjectsApi | None = None,
        group: str = "converge.io",
        version: str = "v1alpha1",
        namespace: str | None = None,
        kinds: Mapping[str, KindMapping] | None = None,
        request_timeout_seconds: float = 5.0,
    ) -> None:
        self.api = api or client.CustomObjectsApi()
        self.group = group
        self.version = version
        self.namespace = namespace
        self.request_timeout_seconds = request_timeout_seconds
        self._kinds: dict[str, KindMapping] = {**BUILTIN_KINDS, **(kinds or {})}

    def register_kind(
        self, kind: str, plural: str | None = None, status_subresource: bool = True
    ) -> KindMapping:
        mapping = KindMapping(self.group, self.version, plural or f"{kind.lower()}s", status_subresource)
        self._kinds[kind] = mapping
        return mapping

    def mapping_for(self, kind: str) -> KindMapping:
        mapping = self._kinds.get(kind)
        if mapping is None:
            mapping = self.register_kind(kind)
        return mapping

    def _owner_api_version(self, kind: str) -> str:
        return self.mapping_for(kind).api_version

    def _call(self, target: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, _request_timeout=self.request_timeout_seconds, **kwargs)
        except ApiException as exc:
            raise translate_api_exception(exc, target) from exc
        except (HTTPError, OSError) as exc:
            raise StoreUnavailableError(f"{target}: {exc}") from exc

    def get(self, key: ReconcileKey) -> ResourceRecord:
        mapping = self.mapping_for(key.kind)
        body = self._call(
            str(key),
            self.api.get_namespaced_custom_object,
            mapping.group,
            mapping.version,
            key.namespace,
            mapping.plural,
            key.name,
        )
        return body_to_record(body, key.kind)

    def list(self, kind: str) -> ListResult:
        mapping = self.mapping_for(kind)
        if self.namespace:
            body = self._call(
                kind,
                self.api.list_namespaced_custom_object,
                mapping.group,
                mapping.version,
                self.namespace,
                mapping.plural,
            )
        else:
            body = self._call(
                kind, self.api.list_cluster_custom_object, mapping.group, mapping.version, mapping.plural
            )
        items = [body_to_record(item, kind) for item in body.get("items") or []]
        resource_version = (body.get("metadata") or {}).get("resourceVersion")
        return ListResult(items=items, resource_version=resource_version)

    def create(self, record: ResourceRecord) -> ResourceRecord:
        mapping = self.mapping_for(record.kind)
        body = record_to_body(record.evolve(resource_version=None), mapping, self._owner_api_version)
        created = self._call(
            str(record.key),
            self.api.create_namespaced_custom_object,
            mapping.group,
            mapping.version,
            record.namespace,
            mapping.plural,
            body,
        )
        stored = body_to_record(created, record.kind)
        if mapping.status_subresource and record.status and stored.status != record.status:
            stored = self._replace_status(stored.evolve(status=record.status), mapping)
        return stored

    def write(
        self, key: ReconcileKey, record: ResourceRecord, expected_version: str | None
    ) -> ResourceRecord:
        if expected_version is None:
            raise ConflictError(f"{key}: writes require the last-read resource version")
        mapping = self.mapping_for(key.kind)
        body = record_to_body(
            record.evolve(
                kind=key.kind,
                namespace=key.namespace,
                name=key.name,
                resource_version=expected_version,
            ),
            mapping,
            self._owner_api_version,
        )
        updated = self._call(
            str(key),
            self.api.replace_namespaced_custom_object,
            mapping.group,
            mapping.version,
            key.namespace,
            mapping.plural,
            key.name,
            body,
        )
        stored = body_to_record(updated, key.kind)
        if mapping.status_subresource and stored.status != record.status:
            stored = self._replace_status(stored.evolve(status=record.status), mapping)
        return stored

    def _replace_status(self, record: ResourceRecord, mapping: KindMapping) -> ResourceRecord:
        body = record_to_body(record, mapping, self._owner_api_version)
        updated = self._call(
            f"{record.key} status",
            self.api.replace_namespaced_custom_object_status,
            mapping.group,
            mapping.version,
            record.namespace,
            mapping.plural,
            record.name,
            body,
        )
        return body_to_record(updated, record.kind)

    def delete(
        self, key: ReconcileKey, expected_version: str | None = None
    ) -> ResourceRecord | None:
        mapping = self.mapping_for(key.kind)
        kwargs: dict[str, Any] = {}
        if expected_version is not None:
            kwargs["body"] = client.V1DeleteOptions(
                preconditions=client.V1Preconditions(resource_version=expected_version)
            )
        response = self._call(
            str(key),
            self.api.delete_namespaced_custom_object,
            mapping.group,
            mapping.version,
            key.namespace,
            mapping.plural,
            key.name,
            **kwargs,
        )
        if not isinstance(response, Mapping) or response.get("kind") == "Status":
            return None
        remaining = body_to_record(response, key.kind)
        if remaining.finalizers:
            return remaining
        return None

    def watch(
        self, kind: str, since_version: str | None, timeout_seconds: float | None = None
    ) -> KubernetesWatchStream:
        return KubernetesWatchStream(self, kind, since_version, timeout_seconds)


class KubernetesWatchStream:
    """One ``watch=true`` list request, yielding :class:`WatchEvent` values.

    Bookmarks are requested so an idle stream still advances the caller's
    resume point.  A ``410`` error event (or response) becomes
    :class:`ResourceVersionTooOldError`.
    """

    _EVENT_TYPES = {"ADDED": ADDED, "MODIFIED": MODIFIED, "DELETED": DELETED, "BOOKMARK": BOOKMARK}

    def __init__(
        self,
        store: KubernetesStore,
        kind: str,
        since_version: str | None,
        timeout_seconds: float | None,
    ) -> None:
        self.store = store
        self.kind = kind
        self.since_version = since_version
        self.timeout_seconds = timeout_seconds
        self._watcher = watch.Watch()

    def stop(self) -> None:
        self._watcher.stop()

    def _stream_kwargs(self) -> dict[str, Any]:
        mapping = self.store.mapping_for(self.kind)
        kwargs: dict[str, Any] = {
            "group": mapping.group,
            "version": mapping.version,
            "plural": mapping.plural,
            "allow_watch_bookmarks": True,
        }
        if self.store.namespace:
            kwargs["namespace"] = self.store.namespace
        if self.since_version:
            kwargs["resource_version"] = self.since_version
        if self.timeout_seconds is not None:
            server_timeout = max(1, math.ceil(self.timeout_seconds))
            kwargs["timeout_seconds"] = server_timeout
            kwargs["_request_timeout"] = server_timeout + self.store.request_timeout_seconds
        return kwargs

    def __iter__(self) -> Iterator[WatchEvent]:
        api = self.store.api
        if self.store.namespace:
            list_fn = api.list_namespaced_custom_object
        else:
            list_fn = api.list_cluster_custom_object
        try:
            for raw in self._watcher.stream(list_fn, **self._stream_kwargs()):
                event = self._convert(raw)
                if event is not None:
                    yield event
        except ApiException as exc:
            raise translate_api_exception(exc, f"watch {self.kind}") from exc
        except (HTTPError, OSError) as exc:
            raise StoreUnavailableError(f"watch {self.kind}: {exc}") from exc

    def _convert(self, raw: Mapping[str, Any]) -> WatchEvent | None:
        raw_type = str(raw.get("type", ""))
        obj = raw.get("object") or {}
        if raw_type == "ERROR":
            code = obj.get("code") if isinstance(obj, Mapping) else None
            message = obj.get("message") if isinstance(obj, Mapping) else obj
            if code == 410:
                raise ResourceVersionTooOldError(f"watch {self.kind}: {message}")
            if code in {401, 403}:
                raise AccessDeniedError(f"watch {self.kind}: {message}")
            raise StoreUnavailableError(f"watch {self.kind}: error event {code}: {message}")
        event_type = self._EVENT_TYPES.get(raw_type)
        if event_type is None or not isinstance(obj, Mapping):
            LOGGER.debug("Skipping watch event %r for %s", raw_type, self.kind)
            return None
        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        if event_type == BOOKMARK:
            return WatchEvent(type=BOOKMARK, record=None, resource_version=resource_version)
        return WatchEvent(
            type=event_type,
            record=body_to_record(obj, self.kind),
            resource_version=resource_version,
        )
