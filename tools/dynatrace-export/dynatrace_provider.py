"""
Terraform lifecycle handlers for Dynatrace resources.

A single CRUDHandler drives every resource kind listed in
dynatrace_api.RESOURCE_KINDS. Handlers raise on failure; the ``logged``
wrapper used at registration turns exceptions into error diagnostics, which
is what Terraform core receives.
"""

import functools
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import requests

from dynatrace_api import RESOURCE_KINDS, DynatraceClient, ResourceKind, ServiceClient, get_kind
from hcl_export import decode, encode

logger = logging.getLogger(__name__)

SEVERITY_ERROR = "error"

DELETE_RETRY_ATTEMPTS = 40
DELETE_RETRY_INTERVAL = 2.0

MONITOR_TYPE_HTTP = "HTTP_MONITOR"
AZURE_SYNC_MONITOR = "Monitor synchronizing credentials with Azure Key Vault ({})"
HASHICORP_SYNC_MONITOR = "Monitor synchronizing credentials with HashiCorp Vault ({})"


class ConfigurationError(Exception):
    """Provider configuration is incomplete or invalid."""


# --- Provider configuration ---

def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def _flag(value: Any) -> bool:
    return _env_bool(value) if isinstance(value, str) else bool(value)


class ProviderConfiguration:
    """Provider-wide settings shared by every resource handler."""

    def __init__(self, env_url: str, api_token: str, http_verbose: bool = False,
                 insecure: bool = False):
        if not env_url:
            raise ConfigurationError("dt_env_url is required (or set DYNATRACE_ENV_URL)")
        if not api_token:
            raise ConfigurationError("dt_api_token is required (or set DYNATRACE_API_TOKEN)")
        self.env_url = env_url.rstrip("/")
        self.api_token = api_token
        self.http_verbose = http_verbose
        self.insecure = insecure

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProviderConfiguration":
        return cls(**_env_settings(environ))

    @classmethod
    def from_provider_block(cls, raw: Dict[str, Any],
                            environ: Optional[Mapping[str, str]] = None) -> "ProviderConfiguration":
        """Build from the provider block, falling back to the environment."""
        defaults = _env_settings(environ)
        return cls(
            env_url=raw.get("dt_env_url") or defaults["env_url"],
            api_token=raw.get("dt_api_token") or defaults["api_token"],
            http_verbose=_flag(raw.get("http_verbose", defaults["http_verbose"])),
            insecure=_flag(raw.get("insecure", defaults["insecure"])),
        )

    def client(self) -> DynatraceClient:
        return DynatraceClient(self.env_url, self.api_token, insecure=self.insecure,
                               verbose=self.http_verbose)


def _env_settings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    return {
        "env_url": env.get("DYNATRACE_ENV_URL") or env.get("DT_ENV_URL", ""),
        "api_token": env.get("DYNATRACE_API_TOKEN") or env.get("DT_API_TOKEN", ""),
        "http_verbose": _env_bool(env.get("DYNATRACE_HTTP_VERBOSE")),
        "insecure": _env_bool(env.get("DYNATRACE_INSECURE")),
    }


# --- Terraform resource data and diagnostics ---

def _is_zero(value: Any) -> bool:
    return value is None or value == "" or value is False or value == 0 \
        or (isinstance(value, (list, dict)) and not value)


class ResourceState:
    """Attributes and identifier of one Terraform resource instance."""

    def __init__(self, resource_id: str = "", attributes: Optional[Dict[str, Any]] = None):
        self._id = resource_id
        self._attributes = dict(attributes or {})

    @property
    def id(self) -> str:
        return self._id

    def set_id(self, resource_id: str) -> None:
        self._id = resource_id

    def get(self, key: str, default: Any = None) -> Any:
        return self._attributes.get(key, default)

    def get_ok(self, key: str) -> Tuple[Any, bool]:
        """Return the value and whether it is set to something non-zero."""
        value = self._attributes.get(key)
        return value, not _is_zero(value)

    def set(self, key: str, value: Any) -> None:
        self._attributes[key] = value

    def attributes(self) -> Dict[str, Any]:
        return dict(self._attributes)


class Diagnostic:
    def __init__(self, severity: str, summary: str, detail: str = ""):
        self.severity = severity
        self.summary = summary
        self.detail = detail

    def __repr__(self) -> str:
        return f"Diagnostic({self.severity!r}, {self.summary!r})"


class Diagnostics(list):
    """Diagnostics returned to Terraform core; empty means success."""

    @classmethod
    def from_err(cls, err: BaseException) -> "Diagnostics":
        detail = ""
        if isinstance(err, requests.HTTPError) and err.response is not None:
            detail = err.response.text
        return cls([Diagnostic(SEVERITY_ERROR, str(err), detail)])

    def has_error(self) -> bool:
        return any(d.severity == SEVERITY_ERROR for d in self)

    def errors(self) -> List[str]:
        return [d.summary for d in self if d.severity == SEVERITY_ERROR]


def logged(fn: Callable) -> Callable:
    """Log a lifecycle call and convert a raised exception into diagnostics."""

    @functools.wraps(fn)
    def wrapper(d: ResourceState, meta: Any) -> Diagnostics:
        name = getattr(fn, "__qualname__", repr(fn))
        logger.debug(f"{name} id={d.id!r}")
        try:
            diags = fn(d, meta)
        except Exception as e:
            logger.debug(f"{name} id={d.id!r} failed: {e}", exc_info=True)
            return Diagnostics.from_err(e)
        if diags is None:
            diags = Diagnostics()
        if diags.has_error():
            logger.debug(f"{name} id={d.id!r} -> {diags.errors()}")
        return diags

    return wrapper


# --- Retry ---

def retry(fn: Callable[[], Any], attempts: int = DELETE_RETRY_ATTEMPTS,
          interval: float = DELETE_RETRY_INTERVAL,
          cancel: Optional[threading.Event] = None,
          sleep: Callable[[float], Any] = time.sleep) -> Any:
    """Call ``fn`` until it succeeds, at most ``attempts`` times.

    Waits ``interval`` seconds between attempts. Setting ``cancel`` stops
    waiting. When every attempt failed (or the wait was cancelled) the last
    error is raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    last_err: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_err = e
            logger.debug(f"attempt {attempt}/{attempts} failed: {e}")
        if attempt == attempts:
            break
        if cancel is not None:
            if cancel.wait(interval):
                logger.debug("retry cancelled")
                break
        else:
            sleep(interval)
    raise last_err


# --- CRUD handlers ---

class CRUDHandler:
    """Create/Read/Update/Delete for one resource kind."""

    def __init__(self, kind: ResourceKind,
                 service_factory: Optional[Callable[[ResourceKind, Any], ServiceClient]] = None):
        self.kind = kind
        self.service_factory = service_factory or default_service

    def service(self, meta: Any) -> ServiceClient:
        return self.service_factory(self.kind, meta)

    def resolve(self, d: ResourceState) -> Dict[str, Any]:
        """Decode the configured attributes into an API object."""
        obj = decode(d.attributes(), self.kind.verbatim)
        for field in self.kind.computed:
            obj.pop(field, None)
        return obj

    def create(self, d: ResourceState, meta: Any) -> Diagnostics:
        obj = self.resolve(d)
        obj.pop(self.kind.id_field, None)
        service = self.service(meta)
        stub = service.create(obj)
        d.set_id(service.stub_id(stub))
        return self.read(d, meta)

    def read(self, d: ResourceState, meta: Any) -> Diagnostics:
        obj = self.service(meta).get(d.id)
        if not isinstance(obj, dict):
            raise ValueError(f"{self.kind.name} {d.id} returned no configuration")
        for k, v in encode(obj, self.kind.read_only, self.kind.verbatim).items():
            d.set(k, v)
        return Diagnostics()

    def update(self, d: ResourceState, meta: Any) -> Diagnostics:
        obj = self.resolve(d)
        obj[self.kind.id_field] = d.id
        self.service(meta).update(obj)
        return self.read(d, meta)

    def delete(self, d: ResourceState, meta: Any) -> Diagnostics:
        self.service(meta).delete(d.id)
        return Diagnostics()


def default_service(kind: ResourceKind, meta: ProviderConfiguration) -> ServiceClient:
    return kind.service(meta.client())


def sync_monitor_name(external: Dict[str, Any], credentials_id: str) -> str:
    """Name of the HTTP monitor Dynatrace creates to sync external vault credentials."""
    if external.get("client_secret") or external.get("client_id") or external.get("tenant_id"):
        return AZURE_SYNC_MONITOR.format(credentials_id)
    if external.get("role_id") or external.get("certificate"):
        return HASHICORP_SYNC_MONITOR.format(credentials_id)
    return ""


def _single_http_monitor(usage: List[Dict[str, Any]]) -> bool:
    if len(usage) != 1:
        return False
    entry = usage[0]
    return entry.get("type") == MONITOR_TYPE_HTTP and int(entry.get("count") or 0) == 1


class CredentialsHandler(CRUDHandler):
    """Credentials synced from an external vault are pinned by a monitor.

    Dynatrace refuses to delete such credentials while the synchronizing
    HTTP monitor exists, and keeps refusing for a while after the monitor is
    gone.
    """

    def __init__(self, kind: ResourceKind, service_factory=None,
                 attempts: int = DELETE_RETRY_ATTEMPTS, interval: float = DELETE_RETRY_INTERVAL,
                 cancel: Optional[threading.Event] = None,
                 sleep: Callable[[float], Any] = time.sleep):
        super().__init__(kind, service_factory)
        self.attempts = attempts
        self.interval = interval
        self.cancel = cancel
        self.sleep = sleep

    def monitor_service(self, meta: Any) -> ServiceClient:
        return self.service_factory(RESOURCE_KINDS["dynatrace_http_monitor"], meta)

    def delete(self, d: ResourceState, meta: Any) -> Diagnostics:
        monitor = self.find_sync_monitor(d, meta)
        if monitor is None:
            return super().delete(d, meta)

        monitors = self.monitor_service(meta)
        logger.info(f"Deleting monitor '{monitor.get('name')}' before credentials {d.id}")
        try:
            monitors.delete(monitor["entityId"])
        except requests.RequestException as e:
            logger.warning(f"Failed to delete monitor {monitor.get('entityId')}: {e}")

        service = self.service(meta)
        retry(lambda: service.delete(d.id), attempts=self.attempts, interval=self.interval,
              cancel=self.cancel, sleep=self.sleep)
        return Diagnostics()

    def find_sync_monitor(self, d: ResourceState, meta: Any) -> Optional[Dict[str, Any]]:
        external, ok = d.get_ok("external")
        if not ok:
            return None
        usage, ok = d.get_ok("credential_usage_summary")
        if not ok or not _single_http_monitor(usage):
            return None
        if isinstance(external, list):
            external = external[0] if external else {}
        name = sync_monitor_name(external, d.id)
        if not name:
            return None
        try:
            listed = self.monitor_service(meta).list()
        except requests.RequestException as e:
            logger.warning(f"Failed to list HTTP monitors: {e}")
            return None
        for monitor in listed:
            if monitor.get("name") == name:
                return monitor
        return None


HANDLERS: Dict[str, type] = {
    "dynatrace_credentials": CredentialsHandler,
}


def handler_for(kind: ResourceKind, service_factory=None) -> CRUDHandler:
    return HANDLERS.get(kind.name, CRUDHandler)(kind, service_factory)


# --- Schemas ---

def _attr(attr_type: str, required: bool = False, computed: bool = False,
          sensitive: bool = False, elem: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    attr = {"type": attr_type, "required": required, "optional": not required and not computed,
            "computed": computed, "sensitive": sensitive}
    if elem is not None:
        attr["elem"] = elem
    return attr


EXTERNAL_VAULT_SCHEMA = {
    "source_auth_method": _attr("string", required=True),
    "vault_url": _attr("string"),
    "path_to_credentials": _attr("string"),
    "credentials_used_for_external_synchronization": _attr("list", elem={"type": "string"}),
    "client_id": _attr("string"),
    "client_secret": _attr("string", sensitive=True),
    "tenant_id": _attr("string"),
    "role_id": _attr("string"),
    "certificate": _attr("string"),
    "username_secret_name": _attr("string"),
    "password_secret_name": _attr("string"),
    "token_secret_name": _attr("string"),
}

SCHEMAS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "dynatrace_credentials": {
        "name": _attr("string", required=True),
        "description": _attr("string"),
        "type": _attr("string"),
        "scope": _attr("string"),
        "scopes": _attr("list", elem={"type": "string"}),
        "owner_access_only": _attr("bool"),
        "public": _attr("bool"),
        "username": _attr("string", sensitive=True),
        "password": _attr("string", sensitive=True),
        "token": _attr("string", sensitive=True),
        "certificate": _attr("string", sensitive=True),
        "format": _attr("string"),
        "external": _attr("map", elem=EXTERNAL_VAULT_SCHEMA),
        "credential_usage_summary": _attr("list", computed=True),
    },
    "dynatrace_dashboard": {
        "dashboard_metadata": _attr("map", required=True),
        "tiles": _attr("list"),
    },
    "dynatrace_dashboard_sharing": {
        "dashboard_id": _attr("string", required=True),
        "enabled": _attr("bool"),
        "preset": _attr("bool"),
        "permissions": _attr("list"),
        "public_access": _attr("map"),
    },
    "dynatrace_http_monitor": {
        "name": _attr("string", required=True),
        "frequency_min": _attr("int", required=True),
        "enabled": _attr("bool"),
        "locations": _attr("list", elem={"type": "string"}),
        "script": _attr("map"),
        "anomaly_detection": _attr("map"),
        "tags": _attr("list"),
    },
    "dynatrace_alerting_profile": {
        "display_name": _attr("string", required=True),
        "rules": _attr("list"),
        "management_zone_id": _attr("string"),
        "event_type_filters": _attr("list"),
    },
}


def generic_schema() -> Dict[str, Dict[str, Any]]:
    return {"name": _attr("string", required=True)}


# --- Provider registration ---

def import_state_passthrough(d: ResourceState, meta: Any) -> List[ResourceState]:
    """Use the remote identifier as the Terraform ID, unchanged."""
    return [d]


class Resource:
    """Schema plus lifecycle functions for one Terraform resource type."""

    def __init__(self, schema: Dict[str, Dict[str, Any]], create: Callable, read: Callable,
                 update: Callable, delete: Callable, importer: Optional[Callable] = None):
        self.schema = schema
        self.create = create
        self.read = read
        self.update = update
        self.delete = delete
        self.importer = importer

    def validate(self, d: ResourceState) -> Diagnostics:
        diags = Diagnostics()
        for key, attr in self.schema.items():
            if attr.get("required") and _is_missing(d.get(key)):
                diags.append(Diagnostic(SEVERITY_ERROR, f'The argument "{key}" is required'))
        return diags


def _is_missing(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def resource_for(kind: ResourceKind, service_factory=None) -> Resource:
    handler = handler_for(kind, service_factory)
    return Resource(
        schema=SCHEMAS.get(kind.name) or generic_schema(),
        create=logged(handler.create),
        read=logged(handler.read),
        update=logged(handler.update),
        delete=logged(handler.delete),
        importer=import_state_passthrough,
    )


class Provider:
    """Resource registry plus the configured provider meta."""

    def __init__(self, kinds: Optional[Dict[str, ResourceKind]] = None, service_factory=None):
        kinds = RESOURCE_KINDS if kinds is None else kinds
        self.resources: Dict[str, Resource] = {
            name: resource_for(kind, service_factory) for name, kind in kinds.items()
        }
        self.meta: Any = None

    def configure(self, raw: Dict[str, Any],
                  environ: Optional[Mapping[str, str]] = None) -> Diagnostics:
        try:
            self.meta = ProviderConfiguration.from_provider_block(raw, environ)
        except ConfigurationError as e:
            return Diagnostics.from_err(e)
        return Diagnostics()

    def resource(self, name: str) -> Resource:
        if name not in self.resources:
            name = get_kind(name).name
        return self.resources[name]

    def create(self, name: str, d: ResourceState) -> Diagnostics:
        res = self.resource(name)
        diags = res.validate(d)
        if diags.has_error():
            return diags
        return res.create(d, self.meta)

    def read(self, name: str, d: ResourceState) -> Diagnostics:
        return self.resource(name).read(d, self.meta)

    def update(self, name: str, d: ResourceState) -> Diagnostics:
        res = self.resource(name)
        diags = res.validate(d)
        if diags.has_error():
            return diags
        return res.update(d, self.meta)

    def delete(self, name: str, d: ResourceState) -> Diagnostics:
        return self.resource(name).delete(d, self.meta)

    def import_resource(self, name: str, remote_id: str) -> Tuple[List[ResourceState], Diagnostics]:
        """Import by remote identifier and read the imported state."""
        res = self.resource(name)
        states = res.importer(ResourceState(remote_id), self.meta)
        diags = Diagnostics()
        for state in states:
            diags.extend(res.read(state, self.meta))
        return states, diags
