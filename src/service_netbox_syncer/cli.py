#!/usr/bin/env python3
"""kubernetes-service-netbox-syncer - Kubernetes Service to NetBox IPAM Sync

Registers the external addresses of exposed Kubernetes services as prefixes in
NetBox IPAM, and removes them again once the services disappear. Each run is a
one-shot reconciliation: the prefixes created by previous runs are tracked in a
small JSON document (a ConfigMap by default), diffed against the services seen
now, and the resulting creates/deletes are issued to NetBox.

Environment variables:

    NetBox:
        NETBOX_URL             NetBox base URL (required)
        NETBOX_API_TOKEN       NetBox API token (required)
        NETBOX_VERIFY_TLS      Verify TLS certificates (default: true)
        NETBOX_TIMEOUT_SECONDS Per-request timeout (default: 10)
        NETBOX_MAX_RETRIES     Attempts per call on connection errors (default: 3)
        NETBOX_CUSTOM_FIELDS   Comma-separated "key=value" custom fields set on
                               every created prefix

    Kubernetes:
        KUBERNETES_CLUSTER                    Cluster name used in prefix
                                              descriptions (default: default)
        KUBERNETES_NAMESPACE_FILTER           Comma-separated namespaces to scan
                                              (default: all namespaces)
        KUBERNETES_TYPE_FILTER                Comma-separated service types
                                              (default: LoadBalancer)
        KUBERNETES_SERVICE_ANNOTATION_FILTER  Comma-separated "key=value"
                                              annotations, all must match
        KUBERNETES_SERVICE_LABEL_FILTER       Comma-separated "key=value"
                                              labels, all must match

    State:
        STATE_BACKEND                   "configmap" or "file" (default: configmap)
        KUBERNETES_CONFIGMAP_NAME       ConfigMap holding the prefix list
                                        (default: kubernetes-service-netbox-syncer)
        KUBERNETES_CONFIGMAP_NAMESPACE  Namespace of that ConfigMap (default: default)
        STATE_PATH                      JSON state file for the "file" backend
                                        (default: /data/prefixes.json)

    Runtime:
        SYNCER_CONFIG_PATH     Optional YAML config file (default: /config/syncer.yaml)
                               Example:
                                 filters:
                                   namespaces: ["apps", "ingress"]
                                   types: ["LoadBalancer"]
                                   annotations:
                                     netbox.io/sync: "true"
                                   labels:
                                     team: network
                                 netbox:
                                   custom_fields:
                                     cluster_role: edge
                               Keys present in the file take precedence over the
                               matching environment variables.
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Persisted state format (key "prefixes.json" of the ConfigMap, or STATE_PATH):

    [
      {
        "dns": "svc.example.com",
        "namespace": "apps",
        "prefix": "203.0.113.10/32",
        "prefix_id": 42,
        "service_name": "web"
      }
    ]

    "dns" holds the service's external address (IP or hostname) and is the key
    used to match records against services on the next run.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import re
import socket
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import NewConnectionError

# =============================================================================
# Configuration
# =============================================================================

# NetBox configuration
NETBOX_URL = os.getenv("NETBOX_URL", "").strip()
NETBOX_API_TOKEN = os.getenv("NETBOX_API_TOKEN", "").strip()
NETBOX_VERIFY_TLS = os.getenv("NETBOX_VERIFY_TLS", "true")
NETBOX_TIMEOUT_SECONDS = float(os.getenv("NETBOX_TIMEOUT_SECONDS", "10"))
NETBOX_MAX_RETRIES = int(os.getenv("NETBOX_MAX_RETRIES", "3"))
NETBOX_CUSTOM_FIELDS = os.getenv("NETBOX_CUSTOM_FIELDS", "")

# Kubernetes configuration
KUBERNETES_CLUSTER = os.getenv("KUBERNETES_CLUSTER", "default").strip()
KUBERNETES_NAMESPACE_FILTER = os.getenv("KUBERNETES_NAMESPACE_FILTER", "")
KUBERNETES_TYPE_FILTER = os.getenv("KUBERNETES_TYPE_FILTER", "LoadBalancer")
KUBERNETES_SERVICE_ANNOTATION_FILTER = os.getenv("KUBERNETES_SERVICE_ANNOTATION_FILTER", "")
KUBERNETES_SERVICE_LABEL_FILTER = os.getenv("KUBERNETES_SERVICE_LABEL_FILTER", "")

# State configuration
STATE_BACKEND = os.getenv("STATE_BACKEND", "configmap").lower().strip()
KUBERNETES_CONFIGMAP_NAME = os.getenv(
    "KUBERNETES_CONFIGMAP_NAME", "kubernetes-service-netbox-syncer"
).strip()
KUBERNETES_CONFIGMAP_NAMESPACE = os.getenv("KUBERNETES_CONFIGMAP_NAMESPACE", "default").strip()
STATE_PATH = os.getenv("STATE_PATH", "/data/prefixes.json")

# Runtime configuration
SYNCER_CONFIG_PATH = os.getenv("SYNCER_CONFIG_PATH", "/config/syncer.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

STATE_CONFIGMAP_KEY = "prefixes.json"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Exceptions
# =============================================================================


class SyncerError(Exception):
    """Base class for all syncer errors."""


class ServiceListingError(SyncerError):
    """The cluster could not be queried for services. Fatal to the run."""


class StateStoreError(SyncerError):
    """The persisted prefix list could not be read or written. Fatal to the run."""


class RegistryError(SyncerError):
    """A single call to the IPAM registry failed."""


class ReconcileError(SyncerError):
    """Base class for per-item failures collected during reconciliation."""


class AddressResolutionFailed(ReconcileError):
    def __init__(self, address: str, cause: Optional[BaseException] = None):
        super().__init__(f"failed to resolve {address}: {cause}")
        self.address = address
        self.cause = cause


class RegistryCreateFailed(ReconcileError):
    """Creating the prefixes for one service failed.

    ``created`` holds the records that were committed to the registry before
    the failure. They exist in the registry and must still be tracked.
    """

    def __init__(
        self,
        address: str,
        cause: Optional[BaseException] = None,
        created: Optional[List["PrefixRecord"]] = None,
    ):
        super().__init__(f"failed to create prefix for {address}: {cause}")
        self.address = address
        self.cause = cause
        self.created: List[PrefixRecord] = list(created or [])


class RegistryDeleteFailed(ReconcileError):
    def __init__(self, record_id: int, cause: Optional[BaseException] = None):
        super().__init__(f"failed to delete prefix {record_id}: {cause}")
        self.record_id = record_id
        self.cause = cause


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ObservedService:
    """An exposed service discovered in the cluster during this run."""

    name: str
    namespace: str
    external_address: str


@dataclass(frozen=True)
class PrefixRecord:
    """A prefix believed to exist in the registry, as tracked in the state."""

    record_id: int
    prefix: str
    external_address: str
    service_name: str
    namespace: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prefix_id": self.record_id,
            "prefix": self.prefix,
            "dns": self.external_address,
            "service_name": self.service_name,
            "namespace": self.namespace,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrefixRecord":
        record_id = data["prefix_id"]
        if isinstance(record_id, bool) or not isinstance(record_id, int):
            raise ValueError(f"prefix_id must be an integer, got {record_id!r}")
        return cls(
            record_id=record_id,
            prefix=str(data["prefix"]),
            external_address=str(data["dns"]),
            service_name=str(data["service_name"]),
            namespace=str(data["namespace"]),
        )


@dataclass(frozen=True)
class ServiceFilter:
    """Criteria a Kubernetes service must meet to be synced.

    An empty category accepts everything for that category.
    """

    namespaces: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)

    def matches_type(self, service_type: Optional[str]) -> bool:
        if not self.types:
            return True
        return service_type in self.types

    def matches_annotations(self, annotations: Optional[Dict[str, str]]) -> bool:
        return _matches_all(self.annotations, annotations or {})

    def matches_labels(self, labels: Optional[Dict[str, str]]) -> bool:
        return _matches_all(self.labels, labels or {})


def _matches_all(required: Dict[str, str], actual: Dict[str, str]) -> bool:
    for key, value in required.items():
        if actual.get(key) != value:
            return False
    return True


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    records: List[PrefixRecord]
    errors: List[ReconcileError] = field(default_factory=list)
    created: List[PrefixRecord] = field(default_factory=list)
    deleted: List[PrefixRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# =============================================================================
# Address Classification
# =============================================================================

DNS_NAME_RE = re.compile(r"([a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}")


def is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def is_dns_name(value: str) -> bool:
    if is_ip_literal(value):
        return False
    return DNS_NAME_RE.fullmatch(value) is not None


def resolve_ipv4(hostname: str) -> List[str]:
    """Resolve a hostname to its IPv4 addresses, in resolver order.

    Raises AddressResolutionFailed if the lookup itself fails. A name with no
    IPv4 addresses resolves to an empty list.
    """
    try:
        infos = socket.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (UnicodeError, OSError) as e:
        raise AddressResolutionFailed(hostname, e) from e

    addresses: List[str] = []
    for family, _, _, _, sockaddr in infos:
        if family != socket.AF_INET:
            continue
        ip = sockaddr[0]
        if ip not in addresses:
            addresses.append(ip)
    return addresses


def host_prefix(ip: str) -> str:
    """Return the single-host prefix for an IP literal."""
    bits = 32 if ipaddress.ip_address(ip).version == 4 else 128
    return f"{ip}/{bits}"


# =============================================================================
# Registry Gateway Interface and Implementations
# =============================================================================


class RegistryGateway(ABC):
    """Abstract base class for IPAM registries holding service prefixes."""

    def __init__(self, resolver: Callable[[str], List[str]] = resolve_ipv4):
        self._resolver = resolver

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the registry name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the registry."""
        pass

    @abstractmethod
    def add_prefix(self, prefix: str, service: ObservedService) -> int:
        """Create a single prefix and return its registry ID. Raises RegistryError."""
        pass

    @abstractmethod
    def delete_prefix(self, record_id: int) -> None:
        """Delete a prefix by registry ID. Raises RegistryError."""
        pass

    def create_prefix(self, service: ObservedService) -> List[PrefixRecord]:
        """Create one prefix per address the service expands to.

        IP literals produce one prefix and DNS names one per resolved IPv4
        address. Addresses that are neither produce nothing. If a registry call
        fails midway, RegistryCreateFailed carries the records created so far.
        """
        address = service.external_address
        if is_ip_literal(address):
            ips = [address]
        elif is_dns_name(address):
            ips = self._resolver(address)
            if not ips:
                logger.warning(f"{address} has no IPv4 addresses, nothing to register")
        else:
            logger.debug(
                f"Skipping {service.namespace}/{service.name}: "
                f"'{address}' is neither an IP nor a DNS name"
            )
            return []

        records: List[PrefixRecord] = []
        for ip in ips:
            prefix = host_prefix(ip)
            try:
                record_id = self.add_prefix(prefix, service)
            except RegistryError as e:
                raise RegistryCreateFailed(address, e, created=records) from e
            records.append(
                PrefixRecord(
                    record_id=record_id,
                    prefix=prefix,
                    external_address=address,
                    service_name=service.name,
                    namespace=service.namespace,
                )
            )
        return records


class NetboxRegistryGateway(RegistryGateway):
    """NetBox IPAM registry implementation."""

    def __init__(
        self,
        url: str,
        token: str,
        cluster: str = "default",
        custom_fields: Optional[Dict[str, str]] = None,
        verify_tls: bool = True,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        resolver: Callable[[str], List[str]] = resolve_ipv4,
    ):
        super().__init__(resolver)
        self._url = url.rstrip("/")
        self._cluster = cluster
        self._custom_fields = dict(custom_fields or {})
        self._timeout = timeout_seconds
        self._max_retries = max(1, max_retries)
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Token {token}", "Accept": "application/json"}
        )
        self._session.verify = verify_tls

    @property
    def name(self) -> str:
        return "NetBox"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(f"{self._url}/api/status/", timeout=self._timeout)
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def add_prefix(self, prefix: str, service: ObservedService) -> int:
        data = {
            "prefix": prefix,
            "description": self._describe(prefix, service),
            "status": "active",
            "is_pool": False,
            "mark_utilized": True,
            "custom_fields": self._custom_fields,
        }
        response = self._request("post", f"{self._url}/api/ipam/prefixes/", json=data)
        try:
            body = response.json()
        except ValueError as e:
            raise RegistryError(f"{self.name} returned invalid JSON for {prefix}: {e}") from e

        record_id = body.get("id") if isinstance(body, dict) else None
        if isinstance(record_id, bool) or not isinstance(record_id, int):
            raise RegistryError(f"{self.name} response for {prefix} has no prefix id")
        logger.info(f"Created prefix {prefix} (id {record_id})")
        return record_id

    def delete_prefix(self, record_id: int) -> None:
        self._request("delete", f"{self._url}/api/ipam/prefixes/{record_id}/")
        logger.info(f"Deleted prefix {record_id}")

    def _describe(self, prefix: str, service: ObservedService) -> str:
        ip = prefix.split("/", 1)[0]
        parts = [ip]
        if ip != service.external_address:
            parts.append(service.external_address)
        parts.extend([service.name, service.namespace, self._cluster])
        return "-".join(parts)

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Issue a request, retrying only when the connection itself failed."""
        for attempt in range(1, self._max_retries + 1):
            try:
                response = getattr(self._session, method)(url, timeout=self._timeout, **kwargs)
                response.raise_for_status()
                return response
            except requests.exceptions.ConnectionError as e:
                if attempt >= self._max_retries or not _safe_to_retry(method, e):
                    raise RegistryError(f"{method.upper()} {url} failed: {e}") from e
                logger.warning(
                    f"{self.name} unreachable ({e}), retry {attempt}/{self._max_retries - 1}"
                )
                time.sleep(attempt)
            except requests.exceptions.RequestException as e:
                raise RegistryError(f"{method.upper()} {url} failed: {e}") from e
        raise RegistryError(f"{method.upper()} {url} failed")


def _safe_to_retry(method: str, error: requests.exceptions.ConnectionError) -> bool:
    """Whether a failed call can be repeated without risking a second create.

    A POST is only repeated when the connection was never established; an
    aborted connection may already have created the prefix.
    """
    if method != "post":
        return True
    if isinstance(error, requests.exceptions.ConnectTimeout):
        return True
    reason = error.args[0] if error.args else None
    return isinstance(getattr(reason, "reason", reason), NewConnectionError)


# =============================================================================
# Service Provider Interface and Implementations
# =============================================================================


class ServiceProvider(ABC):
    """Abstract base class for sources of exposed services."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_services(self, service_filter: ServiceFilter) -> List[ObservedService]:
        """List the services matching the filter. Raises ServiceListingError."""
        pass


def load_kubernetes_api() -> k8s_client.CoreV1Api:
    """Build a CoreV1Api, preferring in-cluster config over kubeconfig."""
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        logger.info("Not running in-cluster, trying kubeconfig")
        kubeconfig = os.getenv("KUBECONFIG") or str(Path.home() / ".kube" / "config")
        k8s_config.load_kube_config(config_file=kubeconfig)
    return k8s_client.CoreV1Api()


class KubernetesServiceProvider(ServiceProvider):
    """Kubernetes Service provider implementation."""

    def __init__(self, core_v1: k8s_client.CoreV1Api):
        self._core_v1 = core_v1

    @property
    def name(self) -> str:
        return "Kubernetes"

    def list_services(self, service_filter: ServiceFilter) -> List[ObservedService]:
        namespaces = list(service_filter.namespaces) or self._list_namespaces()

        services: List[ObservedService] = []
        for namespace in namespaces:
            try:
                items = self._core_v1.list_namespaced_service(namespace).items
            except ApiException as e:
                raise ServiceListingError(
                    f"Failed to list services in namespace {namespace}: {e.status} {e.reason}"
                ) from e

            for svc in items or []:
                metadata = svc.metadata
                service_type = svc.spec.type if svc.spec else None
                if not service_filter.matches_type(service_type):
                    continue
                if not service_filter.matches_annotations(metadata.annotations):
                    continue
                if not service_filter.matches_labels(metadata.labels):
                    continue

                address = _service_external_address(svc)
                if not address:
                    logger.debug(
                        f"Service {metadata.namespace}/{metadata.name} has no external address"
                    )
                    continue

                services.append(
                    ObservedService(
                        name=metadata.name,
                        namespace=metadata.namespace,
                        external_address=address,
                    )
                )
        return services

    def _list_namespaces(self) -> List[str]:
        try:
            items = self._core_v1.list_namespace().items
        except ApiException as e:
            raise ServiceListingError(f"Failed to list namespaces: {e.status} {e.reason}") from e
        return [ns.metadata.name for ns in items or []]


def _service_external_address(svc: Any) -> str:
    """Pick the address a service is reachable at from outside the cluster.

    Priority:
      1. First load balancer ingress IP
      2. First load balancer ingress hostname
      3. First spec.externalIPs entry
    """
    status = svc.status
    load_balancer = status.load_balancer if status else None
    ingress = load_balancer.ingress if load_balancer else None
    if ingress:
        if ingress[0].ip:
            return ingress[0].ip
        if ingress[0].hostname:
            return ingress[0].hostname

    external_ips = _spec_external_ips(svc.spec)
    if external_ips:
        return external_ips[0]

    return ""


def _spec_external_ips(spec: Any) -> List[str]:
    # Client releases name this field external_ips or external_i_ps.
    if spec is None:
        return []
    for attr in ("external_ips", "external_i_ps"):
        value = getattr(spec, attr, None)
        if value:
            return list(value)
    return []


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_list(value: str) -> List[str]:
    """Parse a comma-separated list from env var."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_key_values(value: str) -> Dict[str, str]:
    """Parse comma-separated "key=value" pairs from env var."""
    parsed: Dict[str, str] = {}
    for item in _parse_list(value):
        if "=" not in item:
            logger.warning(f"Ignoring malformed key=value entry '{item}'")
            continue
        key, val = item.split("=", 1)
        key = key.strip()
        if not key:
            logger.warning(f"Ignoring entry with empty key '{item}'")
            continue
        parsed[key] = val.strip()
    return parsed


def _as_mapping(value: Any, setting: str) -> Dict[str, str]:
    """Accept a mapping, or a list of mappings merged in order."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, list):
        merged: Dict[str, str] = {}
        for item in value:
            if not isinstance(item, dict):
                raise ValueError(f"'{setting}' entries must be mappings, got {item!r}")
            merged.update({str(k): str(v) for k, v in item.items()})
        return merged
    raise ValueError(f"'{setting}' must be a mapping or a list of mappings")


def _as_list(value: Any, setting: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return _parse_list(value)
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    raise ValueError(f"'{setting}' must be a list")


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load the optional YAML config file. A missing file yields an empty config."""
    if not config_path or not os.path.isfile(config_path):
        return {}
    with open(config_path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    logger.debug(f"Loaded config file {config_path}")
    return data


def build_service_filter(
    file_config: Dict[str, Any],
    *,
    namespaces: str = "",
    types: str = "",
    annotations: str = "",
    labels: str = "",
) -> ServiceFilter:
    """Combine the config file's "filters" section with env var fallbacks."""
    filters = file_config.get("filters") or {}
    if not isinstance(filters, dict):
        raise ValueError("'filters' must be a mapping")

    return ServiceFilter(
        namespaces=tuple(
            _as_list(filters["namespaces"], "filters.namespaces")
            if "namespaces" in filters
            else _parse_list(namespaces)
        ),
        types=tuple(
            _as_list(filters["types"], "filters.types")
            if "types" in filters
            else _parse_list(types)
        ),
        annotations=(
            _as_mapping(filters["annotations"], "filters.annotations")
            if "annotations" in filters
            else _parse_key_values(annotations)
        ),
        labels=(
            _as_mapping(filters["labels"], "filters.labels")
            if "labels" in filters
            else _parse_key_values(labels)
        ),
    )


def build_custom_fields(file_config: Dict[str, Any], env_value: str = "") -> Dict[str, str]:
    netbox = file_config.get("netbox") or {}
    if not isinstance(netbox, dict):
        raise ValueError("'netbox' must be a mapping")
    if "custom_fields" in netbox:
        return _as_mapping(netbox["custom_fields"], "netbox.custom_fields")
    return _parse_key_values(env_value)


# =============================================================================
# State Management
# =============================================================================


def encode_records(records: Iterable[PrefixRecord]) -> str:
    ordered = sorted(records, key=lambda r: r.record_id)
    return json.dumps([r.to_dict() for r in ordered], indent=2, sort_keys=True)


def decode_records(text: str, source: str) -> List[PrefixRecord]:
    if not text or not text.strip():
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StateStoreError(f"State in {source} is not valid JSON: {e}") from e
    if data is None:
        return []
    if not isinstance(data, list):
        raise StateStoreError(
            f"State in {source} must be a JSON array, got {type(data).__name__}"
        )

    records: List[PrefixRecord] = []
    for item in data:
        if not isinstance(item, dict):
            raise StateStoreError(f"State in {source} has a non-object entry: {item!r}")
        try:
            records.append(PrefixRecord.from_dict(item))
        except (KeyError, ValueError) as e:
            raise StateStoreError(f"State in {source} has an invalid entry {item!r}: {e}") from e
    return records


class StateStore(ABC):
    """Abstract base class for the persisted prefix list."""

    @abstractmethod
    def load(self) -> List[PrefixRecord]:
        """Load the tracked prefixes, empty on first run. Raises StateStoreError."""
        pass

    @abstractmethod
    def save(self, records: Iterable[PrefixRecord]) -> None:
        """Replace the tracked prefixes. Raises StateStoreError."""
        pass


class FileStateStore(StateStore):
    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> List[PrefixRecord]:
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting with empty prefix list")
            return []
        try:
            text = self.path.read_text("utf-8")
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self.path}: {e}") from e
        records = decode_records(text, str(self.path))
        logger.info(f"Loaded {len(records)} prefixes from {self.path}")
        return records

    def save(self, records: Iterable[PrefixRecord]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(encode_records(records), "utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self.path}: {e}") from e
        logger.info(f"Saved state to {self.path}")


class ConfigMapStateStore(StateStore):
    """Prefix list kept under one key of a Kubernetes ConfigMap."""

    def __init__(
        self,
        core_v1: k8s_client.CoreV1Api,
        name: str,
        namespace: str,
        key: str = STATE_CONFIGMAP_KEY,
    ):
        self._core_v1 = core_v1
        self.name = name
        self.namespace = namespace
        self.key = key

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.name}"

    def load(self) -> List[PrefixRecord]:
        configmap = self._read()
        if configmap is None:
            self._create("[]")
            logger.info(f"Created ConfigMap {self.ref} with empty prefix list")
            return []

        data = (configmap.data or {}).get(self.key, "")
        if not data:
            logger.info(f"ConfigMap {self.ref} exists but has no prefix data")
            return []
        records = decode_records(data, f"ConfigMap {self.ref}")
        logger.info(f"Loaded {len(records)} prefixes from ConfigMap {self.ref}")
        return records

    def save(self, records: Iterable[PrefixRecord]) -> None:
        payload = encode_records(records)
        configmap = self._read()
        if configmap is None:
            self._create(payload)
            logger.info(f"Created ConfigMap {self.ref}")
            return

        data = dict(configmap.data or {})
        data[self.key] = payload
        configmap.data = data
        try:
            self._core_v1.replace_namespaced_config_map(self.name, self.namespace, configmap)
        except ApiException as e:
            raise StateStoreError(
                f"Failed to update ConfigMap {self.ref}: {e.status} {e.reason}"
            ) from e
        logger.info(f"Updated ConfigMap {self.ref}")

    def _read(self) -> Optional[k8s_client.V1ConfigMap]:
        try:
            return self._core_v1.read_namespaced_config_map(self.name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise StateStoreError(
                f"Failed to read ConfigMap {self.ref}: {e.status} {e.reason}"
            ) from e

    def _create(self, payload: str) -> None:
        body = k8s_client.V1ConfigMap(
            metadata=k8s_client.V1ObjectMeta(name=self.name, namespace=self.namespace),
            data={self.key: payload},
        )
        try:
            self._core_v1.create_namespaced_config_map(self.namespace, body)
        except ApiException as e:
            raise StateStoreError(
                f"Failed to create ConfigMap {self.ref}: {e.status} {e.reason}"
            ) from e


# =============================================================================
# Reconciliation Engine
# =============================================================================


def reconcile(
    prior_records: Iterable[PrefixRecord],
    desired_services: Iterable[ObservedService],
    gateway: RegistryGateway,
) -> ReconcileResult:
    """Bring the registry in line with the observed services.

    Records and services are matched on the exact external address string.
    Services with no matching record get prefixes created, records with no
    matching service get deleted. Per-item failures are collected in the
    result; a failed deletion keeps its record, and records created before a
    failed creation are kept.
    """
    prior = list(prior_records)
    desired = list(desired_services)

    records_by_address: Dict[str, List[PrefixRecord]] = {}
    for record in prior:
        records_by_address.setdefault(record.external_address, []).append(record)
    services_by_address = {service.external_address: service for service in desired}

    result = ReconcileResult(records=[])

    for service in desired:
        if service.external_address in records_by_address:
            continue
        logger.info(
            f"Creating prefix for service {service.namespace}/{service.name} "
            f"({service.external_address})"
        )
        try:
            records = gateway.create_prefix(service)
        except RegistryCreateFailed as e:
            logger.warning(
                f"Error creating prefix for service {service.namespace}/{service.name}: {e}"
            )
            if e.created:
                logger.warning(
                    f"Keeping {len(e.created)} prefix(es) already created for {e.address}"
                )
            result.created.extend(e.created)
            result.errors.append(e)
            continue
        except AddressResolutionFailed as e:
            logger.warning(
                f"Error creating prefix for service {service.namespace}/{service.name}: {e}"
            )
            result.errors.append(e)
            continue
        result.created.extend(records)

    for record in prior:
        if record.external_address in services_by_address:
            continue
        logger.info(
            f"Deleting prefix {record.record_id} ({record.prefix}, {record.external_address})"
        )
        try:
            gateway.delete_prefix(record.record_id)
        except RegistryError as e:
            error = RegistryDeleteFailed(record.record_id, e)
            logger.warning(f"Error deleting prefix {record.record_id}: {e}")
            result.errors.append(error)
            continue
        result.deleted.append(record)

    deleted_ids = {record.record_id for record in result.deleted}
    kept = [record for record in prior if record.record_id not in deleted_ids]
    result.records = sorted(kept + result.created, key=lambda r: r.record_id)
    return result


class ServiceNetboxSyncer:
    def __init__(
        self,
        *,
        gateway: RegistryGateway,
        service_provider: ServiceProvider,
        state_store: StateStore,
        service_filter: ServiceFilter,
    ):
        self.gateway = gateway
        self.service_provider = service_provider
        self.state_store = state_store
        self.service_filter = service_filter

    def sync_once(self) -> ReconcileResult:
        """Run one reconciliation and persist the resulting prefix list.

        Fatal errors (state unreadable, services unlistable) propagate before
        any registry call is made.
        """
        prior = self.state_store.load()
        services = self.service_provider.list_services(self.service_filter)
        logger.info(f"Fetched {len(services)} services from {self.service_provider.name}")

        result = reconcile(prior, services, self.gateway)

        logger.info(
            f"Created {len(result.created)} prefix(es), deleted {len(result.deleted)}, "
            f"{len(result.errors)} error(s)"
        )
        logger.info(f"Updating state with {len(result.records)} prefixes")
        self.state_store.save(result.records)
        return result


# =============================================================================
# Main
# =============================================================================


def create_gateway(file_config: Dict[str, Any]) -> RegistryGateway:
    """Factory function to create the NetBox registry gateway."""
    return NetboxRegistryGateway(
        url=NETBOX_URL,
        token=NETBOX_API_TOKEN,
        cluster=KUBERNETES_CLUSTER,
        custom_fields=build_custom_fields(file_config, NETBOX_CUSTOM_FIELDS),
        verify_tls=_parse_bool(NETBOX_VERIFY_TLS, default=True),
        timeout_seconds=NETBOX_TIMEOUT_SECONDS,
        max_retries=NETBOX_MAX_RETRIES,
    )


def create_state_store(core_v1: k8s_client.CoreV1Api) -> StateStore:
    """Factory function to create the configured state store."""
    if STATE_BACKEND == "configmap":
        return ConfigMapStateStore(
            core_v1, KUBERNETES_CONFIGMAP_NAME, KUBERNETES_CONFIGMAP_NAMESPACE
        )
    elif STATE_BACKEND == "file":
        return FileStateStore(STATE_PATH)
    else:
        raise ValueError(
            f"Unsupported state backend: '{STATE_BACKEND}'. Supported backends: configmap, file"
        )


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not NETBOX_URL:
        errors.append("NETBOX_URL is required")
    if not NETBOX_API_TOKEN:
        errors.append("NETBOX_API_TOKEN is required")
    if STATE_BACKEND not in {"configmap", "file"}:
        errors.append(f"Unsupported STATE_BACKEND: {STATE_BACKEND}. Supported: configmap, file")
    if STATE_BACKEND == "configmap" and not KUBERNETES_CONFIGMAP_NAME:
        errors.append("KUBERNETES_CONFIGMAP_NAME is required when STATE_BACKEND=configmap")

    try:
        file_config = load_config_file(SYNCER_CONFIG_PATH)
        build_service_filter(file_config)
        build_custom_fields(file_config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        errors.append(f"Invalid config file {SYNCER_CONFIG_PATH}: {e}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"kubernetes-service-netbox-syncer: cluster '{KUBERNETES_CLUSTER}' -> {NETBOX_URL}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    file_config = load_config_file(SYNCER_CONFIG_PATH)
    service_filter = build_service_filter(
        file_config,
        namespaces=KUBERNETES_NAMESPACE_FILTER,
        types=KUBERNETES_TYPE_FILTER,
        annotations=KUBERNETES_SERVICE_ANNOTATION_FILTER,
        labels=KUBERNETES_SERVICE_LABEL_FILTER,
    )
    logger.info(f"Namespaces: {', '.join(service_filter.namespaces) or 'all'}")
    logger.info(f"Service types: {', '.join(service_filter.types) or 'all'}")
    if service_filter.annotations:
        logger.info(f"Annotation filter: {len(service_filter.annotations)} key(s)")
    if service_filter.labels:
        logger.info(f"Label filter: {len(service_filter.labels)} key(s)")

    gateway = create_gateway(file_config)
    if not gateway.test_connection():
        logger.error(f"Cannot connect to {gateway.name}. Exiting.")
        sys.exit(1)

    try:
        core_v1 = load_kubernetes_api()
    except Exception as e:
        logger.error(f"Error initializing Kubernetes client: {e}")
        sys.exit(1)
    logger.info("Initialized Kubernetes client")

    syncer = ServiceNetboxSyncer(
        gateway=gateway,
        service_provider=KubernetesServiceProvider(core_v1),
        state_store=create_state_store(core_v1),
        service_filter=service_filter,
    )

    try:
        result = syncer.sync_once()
    except SyncerError as e:
        logger.error(f"Sync aborted: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)

    if not result.ok:
        logger.warning(f"Sync finished with {len(result.errors)} error(s):")
        for error in result.errors:
            logger.warning(f"  {error}")
    else:
        logger.info("Sync finished")


if __name__ == "__main__":
    main()
