"""
HTTP client and per-resource services for the Dynatrace configuration API.

Every supported resource type is described by a ResourceKind entry in
RESOURCE_KINDS; ServiceClient turns an entry into list/get/create/update/delete
calls against the environment.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import requests
import urllib3

logger = logging.getLogger(__name__)


# --- Dynatrace Client (API token auth) ---

class DynatraceClient:
    """HTTP client for the Dynatrace environment REST API."""

    def __init__(self, env_url: str, api_token: str, insecure: bool = False,
                 verbose: bool = False):
        self.env_url = env_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Api-Token {api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        self.session.verify = not insecure
        if insecure:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        if verbose:
            self.session.hooks["response"].append(_log_response)

    def get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        resp = self.session.get(f"{self.env_url}{path}", params=params)
        resp.raise_for_status()
        return resp.json() if resp.content else None

    def post(self, path: str, data: Any = None) -> Any:
        resp = self.session.post(f"{self.env_url}{path}", json=data or {})
        resp.raise_for_status()
        return resp.json() if resp.content else None

    def put(self, path: str, data: Any = None) -> Any:
        resp = self.session.put(f"{self.env_url}{path}", json=data or {})
        resp.raise_for_status()
        return resp.json() if resp.content else None

    def delete(self, path: str) -> None:
        resp = self.session.delete(f"{self.env_url}{path}")
        resp.raise_for_status()


def _log_response(resp: requests.Response, *args, **kwargs) -> None:
    req = resp.request
    logger.debug(f"{req.method} {req.url} -> {resp.status_code}")


# --- Resource kinds ---

def name_from(obj: Dict[str, Any]) -> str:
    return str(obj.get("name") or "")


def dashboard_name(obj: Dict[str, Any]) -> str:
    metadata = obj.get("dashboardMetadata") or {}
    return str(metadata.get("name") or obj.get("name") or "")


class ResourceKind:
    """Description of one Terraform resource type and its REST endpoint."""

    def __init__(self, name: str, folder: str, path: str, list_key: str = "values",
                 id_field: str = "id", name_of: Callable[[Dict], str] = name_from,
                 list_params: Optional[Dict[str, str]] = None,
                 read_only: Optional[List[str]] = None,
                 computed: Optional[List[str]] = None,
                 verbatim: Optional[List[str]] = None,
                 parent: str = "", service_class: Optional[type] = None):
        self.name = name
        self.folder = folder
        self.path = path
        self.list_key = list_key
        self.id_field = id_field
        self.name_of = name_of
        self.list_params = list_params
        # never part of the Terraform state
        self.read_only = {id_field, "metadata"} | set(read_only or [])
        # kept in state, never sent back and never exported
        self.computed = set(computed or [])
        # data maps whose keys are copied without case conversion
        self.verbatim = set(verbatim or [])
        self.parent = parent
        self.service_class = service_class or ServiceClient

    @property
    def short_name(self) -> str:
        return self.name[len("dynatrace_"):] if self.name.startswith("dynatrace_") else self.name

    def service(self, client: DynatraceClient) -> "ServiceClient":
        return self.service_class(client, self)

    def __repr__(self) -> str:
        return f"ResourceKind({self.name!r})"


class ServiceClient:
    """CRUD operations for a single resource kind."""

    def __init__(self, client: DynatraceClient, kind: ResourceKind):
        self.client = client
        self.kind = kind

    def list(self) -> List[Dict[str, Any]]:
        data = self.client.get(self.kind.path, params=self.kind.list_params)
        if isinstance(data, dict):
            return data.get(self.kind.list_key) or []
        if isinstance(data, list):
            return data
        return []

    def get(self, obj_id: str) -> Dict[str, Any]:
        return self.client.get(f"{self.kind.path}/{obj_id}")

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create the object and return the stub holding its new identifier."""
        stub = self.client.post(self.kind.path, obj)
        if not isinstance(stub, dict) or not stub.get(self.kind.id_field):
            raise ValueError(f"{self.kind.name}: create response carries no {self.kind.id_field}")
        return stub

    def update(self, obj: Dict[str, Any]) -> None:
        obj_id = obj.get(self.kind.id_field)
        if not obj_id:
            raise ValueError(f"{self.kind.name}: cannot update an object without {self.kind.id_field}")
        self.client.put(f"{self.kind.path}/{obj_id}", obj)

    def delete(self, obj_id: str) -> None:
        self.client.delete(f"{self.kind.path}/{obj_id}")

    def stub_id(self, stub: Dict[str, Any]) -> str:
        return str(stub.get(self.kind.id_field, ""))


class DashboardSharingService(ServiceClient):
    """Share settings hang off a dashboard and always exist.

    The identifier is the dashboard id. Creating writes the settings, deleting
    resets them to private.
    """

    def _path(self, dashboard_id: str) -> str:
        return f"{self.kind.path}/{dashboard_id}/shareSettings"

    def list(self) -> List[Dict[str, Any]]:
        # no listing endpoint, fetch() reads the settings of each downloaded dashboard
        return []

    def get(self, obj_id: str) -> Dict[str, Any]:
        settings = self.client.get(self._path(obj_id)) or {}
        settings["id"] = obj_id
        settings["dashboardId"] = obj_id
        return settings

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        dashboard_id = obj.get("dashboardId")
        if not dashboard_id:
            raise ValueError("dynatrace_dashboard_sharing: dashboard_id is required")
        self.client.put(self._path(dashboard_id), self._payload(obj, dashboard_id))
        return {"id": dashboard_id}

    def update(self, obj: Dict[str, Any]) -> None:
        dashboard_id = obj.get("id") or obj.get("dashboardId")
        if not dashboard_id:
            raise ValueError("dynatrace_dashboard_sharing: cannot update without dashboard id")
        self.client.put(self._path(dashboard_id), self._payload(obj, dashboard_id))

    def delete(self, obj_id: str) -> None:
        self.client.put(self._path(obj_id), {
            "id": obj_id,
            "enabled": False,
            "preset": False,
            "permissions": [],
        })

    @staticmethod
    def _payload(obj: Dict[str, Any], dashboard_id: str) -> Dict[str, Any]:
        payload = {k: v for k, v in obj.items() if k != "dashboardId"}
        payload["id"] = dashboard_id
        return payload


CONFIG_V1 = "/api/config/v1"

RESOURCE_KINDS: Dict[str, ResourceKind] = {kind.name: kind for kind in [
    ResourceKind("dynatrace_dashboard", "dashboards", f"{CONFIG_V1}/dashboards",
                 list_key="dashboards", name_of=dashboard_name,
                 verbatim=["filtersPerEntityType"]),
    ResourceKind("dynatrace_dashboard_sharing", "dashboard_sharing", f"{CONFIG_V1}/dashboards",
                 parent="dynatrace_dashboard",
                 service_class=DashboardSharingService, read_only=["dashboardName"]),
    ResourceKind("dynatrace_credentials", "credentials", f"{CONFIG_V1}/credentials",
                 list_key="credentials", computed=["credentialUsageSummary"]),
    ResourceKind("dynatrace_http_monitor", "http_monitors", "/api/v1/synthetic/monitors",
                 list_key="monitors", id_field="entityId", list_params={"type": "HTTP"},
                 read_only=["createdFrom"]),
    ResourceKind("dynatrace_management_zone", "management_zones", f"{CONFIG_V1}/managementZones"),
    ResourceKind("dynatrace_alerting_profile", "alerting_profiles", f"{CONFIG_V1}/alertingProfiles",
                 name_of=lambda obj: str(obj.get("displayName") or obj.get("name") or "")),
    ResourceKind("dynatrace_maintenance_window", "maintenance_windows", f"{CONFIG_V1}/maintenanceWindows"),
    ResourceKind("dynatrace_request_attribute", "request_attributes",
                 f"{CONFIG_V1}/service/requestAttributes"),
    ResourceKind("dynatrace_processgroup_naming", "processgroup_namings",
                 f"{CONFIG_V1}/conditionalNaming/processGroup"),
    ResourceKind("dynatrace_custom_anomalies", "custom_anomalies",
                 f"{CONFIG_V1}/anomalyDetection/metricEvents"),
]}


def get_kind(name: str) -> ResourceKind:
    """Look up a resource kind by Terraform name, with or without the prefix."""
    if name in RESOURCE_KINDS:
        return RESOURCE_KINDS[name]
    prefixed = f"dynatrace_{name}"
    if prefixed in RESOURCE_KINDS:
        return RESOURCE_KINDS[prefixed]
    raise KeyError(f"unknown resource type: {name}")
