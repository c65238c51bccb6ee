#!/usr/bin/env python3
"""
dynatrace-export: Download Dynatrace environment configuration as Terraform .tf files.

Every resource is written to its own file, grouped in one folder per resource
type. Resources that cannot be applied as exported (missing secrets, objects
owned by Dynatrace) go to a .requires_attention folder instead.

Usage:
    python3 dynatrace_export.py --url https://abc123.live.dynatrace.com --api-token TOKEN -o ./configuration
    python3 dynatrace_export.py --url URL --api-token TOKEN --resources dashboards,credentials --commented-id
"""

import argparse
import logging
import os
import sys
from typing import Any, Callable, Dict, List, Optional, Set

import requests

from dynatrace_api import RESOURCE_KINDS, DynatraceClient, ResourceKind, get_kind
from hcl_export import DEFAULT_SKIP, escape, escf, export

logger = logging.getLogger(__name__)

DASHBOARD = "dynatrace_dashboard"
DASHBOARD_SHARING = "dynatrace_dashboard_sharing"
REQUIRES_ATTENTION = ".requires_attention"
SYNC_MONITOR_PREFIX = "Monitor synchronizing credentials with "
SECRET_CREDENTIAL_TYPES = {"USERNAME_PASSWORD", "CERTIFICATE", "TOKEN", "PUBLIC_CERTIFICATE"}


class Resource:
    """A downloaded remote object."""

    def __init__(self, name: str, id: str, rest_object: Dict[str, Any], req_inter: bool = False):
        self.name = name
        self.id = id
        self.rest_object = rest_object
        self.req_inter = req_inter

    def __repr__(self) -> str:
        return f"Resource({self.name!r}, {self.id!r}, req_inter={self.req_inter})"


Resources = List[Resource]


class DownloadConfig:
    def __init__(self, target_folder: str, commented_id: bool = False):
        self.target_folder = target_folder
        self.commented_id = commented_id


class NameCounter:
    """Hands out unique Terraform labels for possibly repeated display names.

    The same (name, key) pair always gets the same label. The first key seen
    for a name gets the name itself, later keys get ``<name>_1``, ``<name>_2``...
    """

    def __init__(self):
        self._labels: Dict[tuple, str] = {}
        self._counts: Dict[str, int] = {}
        self._issued = set()

    def numbering(self, name: str, key: Optional[str] = None) -> str:
        if (name, key) in self._labels:
            return self._labels[(name, key)]
        count = self._counts.get(name, 0)
        label = name if count == 0 else f"{name}_{count}"
        while label in self._issued:
            count += 1
            label = f"{name}_{count}"
        self._counts[name] = count + 1
        self._issued.add(label)
        self._labels[(name, key)] = label
        return label


class InterventionInfo:
    """Why a resource kind may need manual work after download, and which objects do."""

    def __init__(self, reason: str, predicate: Callable[[Dict[str, Any]], bool]):
        self.reason = reason
        self.predicate = predicate

    def requires_attention(self, rest_object: Dict[str, Any]) -> bool:
        return bool(self.predicate(rest_object))


def _credentials_without_secret(obj: Dict[str, Any]) -> bool:
    return obj.get("type") in SECRET_CREDENTIAL_TYPES and not obj.get("external")


def _sync_monitor(obj: Dict[str, Any]) -> bool:
    return str(obj.get("name", "")).startswith(SYNC_MONITOR_PREFIX)


def _dynatrace_owned(obj: Dict[str, Any]) -> bool:
    metadata = obj.get("dashboardMetadata") or {}
    return metadata.get("owner") == "Dynatrace" or bool(metadata.get("preset"))


INTERVENTION_INFO: Dict[str, InterventionInfo] = {
    "dynatrace_credentials": InterventionInfo(
        "Secrets are not part of the download, fill in password/token/certificate",
        _credentials_without_secret),
    "dynatrace_http_monitor": InterventionInfo(
        "Monitor is created and deleted by Dynatrace for external vault credentials",
        _sync_monitor),
    "dynatrace_dashboard": InterventionInfo(
        "Preset dashboard owned by Dynatrace",
        _dynatrace_owned),
}


def export_options(res_name: str) -> Dict[str, Any]:
    """Keys of an API object that never appear in exported HCL, and data maps copied as is."""
    kind = RESOURCE_KINDS.get(res_name)
    if kind is None:
        return {"skip": DEFAULT_SKIP}
    return {"skip": kind.read_only | kind.computed, "verbatim": kind.verbatim}


def unique_stem(stem: str, used: Set[str]) -> str:
    """Return ``stem`` or the first free ``<stem>_<n>``, and mark it used."""
    candidate = stem
    n = 0
    while candidate in used:
        n += 1
        candidate = f"{stem}_{n}"
    used.add(candidate)
    return candidate


class ResourceData(dict):
    """Downloaded resources keyed by Terraform resource type."""

    def write_resource_separate(self, config: DownloadConfig, res_name: str, res_folder: str,
                                resources: Resources, name_counter: NameCounter) -> List[str]:
        """Write each resource not requiring attention to its own file in ``res_folder``.

        Stops at the first error; files already written stay in place.
        """
        folder = os.path.join(config.target_folder, res_folder)
        os.makedirs(folder, exist_ok=True)
        options = export_options(res_name)
        written = []
        stems: Set[str] = set()
        for resource in resources:
            if resource.req_inter:
                continue

            stem = unique_stem(escf(resource.name), stems)
            file_name = os.path.join(folder, f"{res_folder}.{stem}.tf")
            _remove(file_name)

            with open(file_name, "w") as f:
                if config.commented_id:
                    label = name_counter.numbering(escape(resource.name), resource.id)
                    export(resource.rest_object, f, res_name, label,
                           f'id = "{resource.id}"', **options)
                else:
                    label = escape(resource.name)
                    export(resource.rest_object, f, res_name, label, **options)

                if res_name == DASHBOARD:
                    self.write_dashboard_sharing(f, resource, label)
            written.append(file_name)
        return written

    def write_dashboard_sharing(self, f, dashboard: Resource, label: str) -> bool:
        """Append the share settings of ``dashboard``, if any were downloaded.

        Settings are matched by dashboard id, by name only when no id matches.
        """
        sharing = self.get(DASHBOARD_SHARING, [])
        match = next((r for r in sharing if r.id == dashboard.id), None)
        if match is None:
            match = next((r for r in sharing if r.name == dashboard.name), None)
        if match is None:
            return False
        f.write("\n")
        export(match.rest_object, f, DASHBOARD_SHARING, label, **export_options(DASHBOARD_SHARING))
        return True

    def write_res_req_attn(self, config: DownloadConfig,
                           intervention: Optional[Dict[str, InterventionInfo]] = None) -> List[str]:
        """Write every resource flagged for manual review into .requires_attention."""
        intervention = INTERVENTION_INFO if intervention is None else intervention
        folder = os.path.join(config.target_folder, REQUIRES_ATTENTION)
        written = []
        stems: Set[str] = set()
        for res_name, info in intervention.items():
            options = export_options(res_name)
            for resource in self.get(res_name, []):
                if not resource.req_inter:
                    continue

                os.makedirs(folder, exist_ok=True)
                short_name = res_name[len("dynatrace_"):] if res_name.startswith("dynatrace_") else res_name
                stem = unique_stem(f"{short_name}.{escf(resource.name)}", stems)
                file_name = os.path.join(folder, f"{stem}.tf")
                _remove(file_name)

                with open(file_name, "w") as f:
                    if config.commented_id:
                        export(resource.rest_object, f, res_name, escape(resource.name),
                               f'id = "{resource.id}"', **options)
                    else:
                        export(resource.rest_object, f, res_name, escape(resource.name), **options)
                logger.info(f"{res_name} '{resource.name}' requires attention: {info.reason}")
                written.append(file_name)
        return written


def _remove(file_name: str) -> None:
    try:
        os.remove(file_name)
    except FileNotFoundError:
        pass


# --- Download ---

def fetch(client: DynatraceClient, kinds: List[ResourceKind],
          intervention: Optional[Dict[str, InterventionInfo]] = None) -> ResourceData:
    """Download every object of the given kinds.

    Kinds with a parent (dashboard sharing) are fetched once per downloaded
    parent object. Failures are logged and skipped.
    """
    intervention = INTERVENTION_INFO if intervention is None else intervention
    data = ResourceData()
    for kind in sorted(kinds, key=lambda k: bool(k.parent)):
        service = kind.service(client)
        info = intervention.get(kind.name)

        if kind.parent:
            stubs = [{"id": p.id, "name": p.name} for p in data.get(kind.parent, [])]
        else:
            try:
                stubs = service.list()
            except requests.RequestException as e:
                logger.warning(f"Failed to list {kind.name}: {e}")
                continue

        resources = []
        for stub in stubs:
            obj_id = str(stub.get(kind.id_field, ""))
            try:
                obj = service.get(obj_id)
            except requests.RequestException as e:
                logger.warning(f"Failed to fetch {kind.name} {obj_id}: {e}")
                continue
            if not isinstance(obj, dict):
                continue

            if kind.parent:
                name = stub["name"]
            else:
                name = kind.name_of(obj) or kind.name_of(stub) or obj_id
            req_inter = info.requires_attention(obj) if info else False
            resources.append(Resource(name, obj_id, obj, req_inter))

        if resources:
            data[kind.name] = resources
    return data


def write_main_tf(target_folder: str, folders: List[str]) -> None:
    """Write the root main.tf with the provider and one module per folder."""
    lines = [
        "# Generated by dynatrace-export",
        "terraform {",
        "  required_providers {",
        "    dynatrace = {",
        '      source = "dynatrace-oss/dynatrace"',
        "    }",
        "  }",
        "}",
        "",
        "# Reads DYNATRACE_ENV_URL and DYNATRACE_API_TOKEN",
        'provider "dynatrace" {',
        "}",
        "",
    ]
    for folder in folders:
        lines.append(f'module "{folder}" {{')
        lines.append(f'  source = "./{folder}"')
        lines.append("}")
        lines.append("")

    with open(os.path.join(target_folder, "main.tf"), "w") as f:
        f.write("\n".join(lines))


def write_providers_tf(folder: str) -> None:
    content = '''# Generated by dynatrace-export
terraform {
  required_providers {
    dynatrace = {
      source = "dynatrace-oss/dynatrace"
    }
  }
}
'''
    with open(os.path.join(folder, "providers.tf"), "w") as f:
        f.write(content)


def download(client: DynatraceClient, config: DownloadConfig, kinds: List[ResourceKind],
             intervention: Optional[Dict[str, InterventionInfo]] = None) -> ResourceData:
    """Fetch the given kinds and write them below ``config.target_folder``."""
    intervention = INTERVENTION_INFO if intervention is None else intervention
    os.makedirs(config.target_folder, exist_ok=True)

    data = fetch(client, kinds, intervention)

    folders = []
    for kind in kinds:
        # children are appended to their parent's files
        if kind.parent or not any(not r.req_inter for r in data.get(kind.name, [])):
            continue
        print(f"  Writing {kind.name}...")
        written = data.write_resource_separate(config, kind.name, kind.folder,
                                               data[kind.name], NameCounter())
        write_providers_tf(os.path.join(config.target_folder, kind.folder))
        folders.append(kind.folder)
        print(f"    -> {os.path.join(config.target_folder, kind.folder)} ({len(written)} resources)")

    attention = data.write_res_req_attn(config, intervention)
    write_main_tf(config.target_folder, folders)

    print(f"\nDownload complete!")
    print(f"  Output directory: {config.target_folder}")
    print(f"  Resource folders: {len(folders)}")
    if attention:
        print(f"  Requiring attention: {len(attention)} (see {REQUIRES_ATTENTION}/)")
    return data


def resolve_kinds(selection: Optional[List[str]]) -> List[ResourceKind]:
    """Map --resources names to kinds; dashboards bring their sharing along."""
    if selection is None:
        return list(RESOURCE_KINDS.values())
    kinds = []
    for name in selection:
        kind = get_kind(name)
        if kind not in kinds:
            kinds.append(kind)
    if RESOURCE_KINDS[DASHBOARD] in kinds and RESOURCE_KINDS[DASHBOARD_SHARING] not in kinds:
        kinds.append(RESOURCE_KINDS[DASHBOARD_SHARING])
    return kinds


def main():
    parser = argparse.ArgumentParser(
        prog="dynatrace-export",
        description="Download Dynatrace configuration as Terraform .tf files"
    )
    parser.add_argument("--url", default=os.environ.get("DYNATRACE_ENV_URL"),
                        help="Dynatrace environment URL (or DYNATRACE_ENV_URL env var)")
    parser.add_argument("--api-token", default=os.environ.get("DYNATRACE_API_TOKEN"),
                        help="API token (or DYNATRACE_API_TOKEN env var)")
    parser.add_argument("--insecure", action="store_true",
                        default=bool(os.environ.get("DYNATRACE_INSECURE")),
                        help="Skip TLS certificate verification")
    parser.add_argument("--output-dir", "-o", default="./configuration",
                        help="Output directory (default: ./configuration)")
    parser.add_argument("--resources", "-r", default="all",
                        help=f"Comma-separated resource types to download (default: all). "
                             f"Available: {', '.join(k.short_name for k in RESOURCE_KINDS.values())}")
    parser.add_argument("--commented-id", "--id", action="store_true",
                        help="Add the remote ID of each resource as a comment")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose output")

    args = parser.parse_args()

    if not args.url:
        parser.error("--url is required (or set DYNATRACE_ENV_URL)")
    if not args.api_token:
        parser.error("--api-token is required (or set DYNATRACE_API_TOKEN)")

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    selection = None if args.resources == "all" else [r.strip() for r in args.resources.split(",") if r.strip()]
    try:
        kinds = resolve_kinds(selection)
    except KeyError as e:
        parser.error(str(e))

    client = DynatraceClient(args.url, args.api_token, insecure=args.insecure, verbose=args.verbose)
    config = DownloadConfig(args.output_dir, commented_id=args.commented_id)

    print(f"Downloading configuration from {args.url}...")
    try:
        download(client, config, kinds)
    except OSError as e:
        print(f"  ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
