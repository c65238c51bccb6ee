"""Unit tests for dynatrace_export.py."""

import copy
import os
from unittest.mock import MagicMock

import pytest
import requests

from dynatrace_api import RESOURCE_KINDS, DynatraceClient
from dynatrace_export import (
    INTERVENTION_INFO,
    REQUIRES_ATTENTION,
    DownloadConfig,
    InterventionInfo,
    NameCounter,
    Resource,
    ResourceData,
    download,
    fetch,
    resolve_kinds,
)

MZ = "dynatrace_management_zone"


def zone(name, obj_id, req_inter=False):
    return Resource(name, obj_id, {"id": obj_id, "name": name, "description": f"{name} zone"}, req_inter)


def read(path):
    with open(path) as f:
        return f.read()


# ===== NameCounter =====

class TestNameCounter:
    def test_first_occurrence_keeps_name(self):
        assert NameCounter().numbering("zone", "MZ-1") == "zone"

    def test_same_key_same_label(self):
        counter = NameCounter()
        first = counter.numbering("zone", "MZ-1")
        counter.numbering("zone", "MZ-2")
        assert counter.numbering("zone", "MZ-1") == first

    def test_repeated_name_without_key(self):
        counter = NameCounter()
        assert counter.numbering("zone") == counter.numbering("zone")

    def test_shared_name_distinct_keys(self):
        counter = NameCounter()
        labels = [counter.numbering("zone", f"MZ-{i}") for i in range(3)]
        assert labels == ["zone", "zone_1", "zone_2"]

    def test_distinct_names(self):
        counter = NameCounter()
        assert counter.numbering("a", "1") != counter.numbering("b", "2")

    def test_suffix_never_collides_with_real_name(self):
        counter = NameCounter()
        counter.numbering("zone_1", "MZ-9")
        counter.numbering("zone", "MZ-1")
        assert counter.numbering("zone", "MZ-2") == "zone_2"


# ===== write_resource_separate =====

class TestWriteResourceSeparate:
    def test_one_file_per_resource(self, tmp_path):
        config = DownloadConfig(str(tmp_path))
        resources = [zone("Zone A", "MZ-1"), zone("Zone B", "MZ-2"), zone("Flagged", "MZ-3", True)]
        data = ResourceData({MZ: resources})

        data.write_resource_separate(config, MZ, "management_zones", resources, NameCounter())

        files = sorted(os.listdir(tmp_path / "management_zones"))
        assert files == ["management_zones.Zone_A.tf", "management_zones.Zone_B.tf"]
        content = read(tmp_path / "management_zones" / "management_zones.Zone_A.tf")
        assert content.startswith('resource "dynatrace_management_zone" "Zone_A" {')
        assert 'description = "Zone A zone"' in content
        assert "MZ-1" not in content

    def test_commented_id(self, tmp_path):
        config = DownloadConfig(str(tmp_path), commented_id=True)
        resources = [zone("Zone A", "MZ-1")]
        ResourceData({MZ: resources}).write_resource_separate(
            config, MZ, "management_zones", resources, NameCounter())

        content = read(tmp_path / "management_zones" / "management_zones.Zone_A.tf")
        assert content.splitlines()[0] == '# id = "MZ-1"'

    def test_no_commented_id(self, tmp_path):
        config = DownloadConfig(str(tmp_path), commented_id=False)
        resources = [zone("Zone A", "MZ-1")]
        ResourceData({MZ: resources}).write_resource_separate(
            config, MZ, "management_zones", resources, NameCounter())

        assert "# id" not in read(tmp_path / "management_zones" / "management_zones.Zone_A.tf")

    def test_duplicate_names_numbered(self, tmp_path):
        config = DownloadConfig(str(tmp_path), commented_id=True)
        resources = [zone("Zone", "MZ-1"), zone("Zone", "MZ-2")]
        written = ResourceData({MZ: resources}).write_resource_separate(
            config, MZ, "management_zones", resources, NameCounter())

        assert len(set(written)) == 2
        contents = [read(p) for p in written]
        assert '"dynatrace_management_zone" "Zone" {' in contents[0]
        assert '"dynatrace_management_zone" "Zone_1" {' in contents[1]

    def test_overwrites_existing(self, tmp_path):
        folder = tmp_path / "management_zones"
        folder.mkdir()
        (folder / "management_zones.Zone_A.tf").write_text("stale")
        resources = [zone("Zone A", "MZ-1")]
        ResourceData({MZ: resources}).write_resource_separate(
            DownloadConfig(str(tmp_path)), MZ, "management_zones", resources, NameCounter())

        assert "stale" not in read(folder / "management_zones.Zone_A.tf")

    def test_suffixed_file_name_not_reused(self, tmp_path):
        resources = [zone("a", "MZ-1"), zone("a", "MZ-2"), zone("a_1", "MZ-3")]
        written = ResourceData({MZ: resources}).write_resource_separate(
            DownloadConfig(str(tmp_path)), MZ, "management_zones", resources, NameCounter())

        assert len(set(written)) == 3
        assert sorted(os.listdir(tmp_path / "management_zones")) == [
            "management_zones.a.tf", "management_zones.a_1.tf", "management_zones.a_1_1.tf"]
        assert 'description = "a_1 zone"' in read(written[2])

    def test_fail_fast_keeps_earlier_files(self, tmp_path):
        resources = [zone("First", "MZ-1"), Resource("Broken", "MZ-2", None), zone("Last", "MZ-3")]
        with pytest.raises(TypeError):
            ResourceData({MZ: resources}).write_resource_separate(
                DownloadConfig(str(tmp_path)), MZ, "management_zones", resources, NameCounter())

        folder = tmp_path / "management_zones"
        assert (folder / "management_zones.First.tf").exists()
        assert not (folder / "management_zones.Last.tf").exists()


class TestDashboardSharing:
    def setup_method(self):
        self.dashboard = Resource("Overview", "d-1", {
            "id": "d-1", "dashboardMetadata": {"name": "Overview", "owner": "me"}, "tiles": []})

    def test_appends_matching_sharing(self, tmp_path):
        sharing = Resource("Overview", "d-1", {"id": "d-1", "dashboardId": "d-1", "enabled": True})
        data = ResourceData({
            "dynatrace_dashboard": [self.dashboard],
            "dynatrace_dashboard_sharing": [sharing],
        })
        data.write_resource_separate(DownloadConfig(str(tmp_path)), "dynatrace_dashboard", "dashboards",
                                     [self.dashboard], NameCounter())

        content = read(tmp_path / "dashboards" / "dashboards.Overview.tf")
        assert 'resource "dynatrace_dashboard" "Overview"' in content
        assert 'resource "dynatrace_dashboard_sharing" "Overview"' in content
        assert 'dashboard_id = "d-1"' in content

    def test_no_sharing_is_not_an_error(self, tmp_path):
        data = ResourceData({"dynatrace_dashboard": [self.dashboard]})
        data.write_resource_separate(DownloadConfig(str(tmp_path)), "dynatrace_dashboard", "dashboards",
                                     [self.dashboard], NameCounter())

        content = read(tmp_path / "dashboards" / "dashboards.Overview.tf")
        assert "dynatrace_dashboard_sharing" not in content

    def test_same_named_dashboards_get_own_sharing(self, tmp_path):
        dashboards = [
            Resource("Ops", "d-1", {"id": "d-1", "dashboardMetadata": {"name": "Ops"}}),
            Resource("Ops", "d-2", {"id": "d-2", "dashboardMetadata": {"name": "Ops"}}),
        ]
        data = ResourceData({
            "dynatrace_dashboard": dashboards,
            "dynatrace_dashboard_sharing": [
                Resource("Ops", "d-1", {"id": "d-1", "dashboardId": "d-1", "enabled": True}),
                Resource("Ops", "d-2", {"id": "d-2", "dashboardId": "d-2", "enabled": False}),
            ],
        })
        written = data.write_resource_separate(DownloadConfig(str(tmp_path), commented_id=True),
                                               "dynatrace_dashboard", "dashboards", dashboards,
                                               NameCounter())

        second = read(written[1])
        assert 'resource "dynatrace_dashboard" "Ops_1"' in second
        assert 'resource "dynatrace_dashboard_sharing" "Ops_1"' in second
        assert 'dashboard_id = "d-2"' in second
        assert "d-1" not in second

    def test_other_names_not_appended(self, tmp_path):
        sharing = Resource("Other", "d-2", {"id": "d-2", "dashboardId": "d-2", "enabled": True})
        data = ResourceData({
            "dynatrace_dashboard": [self.dashboard],
            "dynatrace_dashboard_sharing": [sharing],
        })
        data.write_resource_separate(DownloadConfig(str(tmp_path)), "dynatrace_dashboard", "dashboards",
                                     [self.dashboard], NameCounter())

        assert "dynatrace_dashboard_sharing" not in read(tmp_path / "dashboards" / "dashboards.Overview.tf")


# ===== write_res_req_attn =====

class TestWriteResReqAttn:
    def test_writes_flagged_resources(self, tmp_path):
        data = ResourceData({
            "dynatrace_credentials": [
                Resource("login", "C-1", {"id": "C-1", "name": "login"}, req_inter=True),
                Resource("synced", "C-2", {"id": "C-2", "name": "synced"}),
            ],
        })
        data.write_res_req_attn(DownloadConfig(str(tmp_path)), INTERVENTION_INFO)

        assert os.listdir(tmp_path / REQUIRES_ATTENTION) == ["credentials.login.tf"]
        content = read(tmp_path / REQUIRES_ATTENTION / "credentials.login.tf")
        assert content.startswith('resource "dynatrace_credentials" "login" {')

    def test_commented_id_uses_plain_label(self, tmp_path):
        data = ResourceData({
            "dynatrace_credentials": [
                Resource("login", "C-1", {"id": "C-1", "name": "login"}, req_inter=True),
            ],
        })
        data.write_res_req_attn(DownloadConfig(str(tmp_path), commented_id=True), INTERVENTION_INFO)

        lines = read(tmp_path / REQUIRES_ATTENTION / "credentials.login.tf").splitlines()
        assert lines[0] == '# id = "C-1"'
        assert lines[1] == 'resource "dynatrace_credentials" "login" {'

    def test_same_names_get_separate_files(self, tmp_path):
        data = ResourceData({
            "dynatrace_credentials": [
                Resource("login", "C-1", {"id": "C-1", "name": "login"}, req_inter=True),
                Resource("login", "C-2", {"id": "C-2", "name": "login"}, req_inter=True),
            ],
        })
        written = data.write_res_req_attn(DownloadConfig(str(tmp_path), commented_id=True),
                                          INTERVENTION_INFO)

        assert sorted(os.listdir(tmp_path / REQUIRES_ATTENTION)) == \
            ["credentials.login.tf", "credentials.login_1.tf"]
        assert read(written[1]).startswith('# id = "C-2"')

    def test_only_known_kinds(self, tmp_path):
        data = ResourceData({MZ: [zone("Zone", "MZ-1", req_inter=True)]})
        written = data.write_res_req_attn(DownloadConfig(str(tmp_path)), INTERVENTION_INFO)

        assert written == []
        assert not (tmp_path / REQUIRES_ATTENTION).exists()

    def test_explicit_registry(self, tmp_path):
        data = ResourceData({MZ: [zone("Zone", "MZ-1", req_inter=True)]})
        registry = {MZ: InterventionInfo("test", lambda obj: True)}
        data.write_res_req_attn(DownloadConfig(str(tmp_path)), registry)

        assert os.listdir(tmp_path / REQUIRES_ATTENTION) == ["management_zone.Zone.tf"]


# ===== intervention predicates =====

class TestInterventionInfo:
    def test_credentials_without_secret(self):
        info = INTERVENTION_INFO["dynatrace_credentials"]
        assert info.requires_attention({"type": "USERNAME_PASSWORD"})
        assert not info.requires_attention({"type": "USERNAME_PASSWORD", "external": {"vaultUrl": "x"}})

    def test_sync_monitor(self):
        info = INTERVENTION_INFO["dynatrace_http_monitor"]
        assert info.requires_attention({"name": "Monitor synchronizing credentials with Azure Key Vault (C-1)"})
        assert not info.requires_attention({"name": "Login check"})

    def test_preset_dashboard(self):
        info = INTERVENTION_INFO["dynatrace_dashboard"]
        assert info.requires_attention({"dashboardMetadata": {"owner": "Dynatrace"}})
        assert not info.requires_attention({"dashboardMetadata": {"owner": "me"}})


# ===== fetch / download =====

REMOTE = {
    "/api/config/v1/dashboards": {"dashboards": [
        {"id": "d-1", "name": "Overview"},
        {"id": "d-2", "name": "Preset"},
    ]},
    "/api/config/v1/dashboards/d-1": {
        "id": "d-1", "dashboardMetadata": {"name": "Overview", "owner": "me"}, "tiles": []},
    "/api/config/v1/dashboards/d-2": {
        "id": "d-2", "dashboardMetadata": {"name": "Preset", "owner": "Dynatrace", "preset": True}},
    "/api/config/v1/dashboards/d-1/shareSettings": {
        "enabled": True, "permissions": [{"type": "ALL", "permission": "VIEW"}]},
    "/api/config/v1/dashboards/d-2/shareSettings": {"enabled": False},
    "/api/config/v1/credentials": {"credentials": [
        {"id": "C-1", "name": "login"},
        {"id": "C-2", "name": "synced"},
    ]},
    "/api/config/v1/credentials/C-1": {"id": "C-1", "name": "login", "type": "USERNAME_PASSWORD"},
    "/api/config/v1/credentials/C-2": {
        "id": "C-2", "name": "synced", "type": "USERNAME_PASSWORD",
        "external": {"sourceAuthMethod": "HASHICORP_VAULT_APPROLE", "roleId": "r"},
        "credentialUsageSummary": [{"type": "HTTP_MONITOR", "count": 1}]},
}


def fake_client():
    def get(path, params=None):
        if path not in REMOTE:
            raise requests.HTTPError(f"404 Client Error: {path}")
        return copy.deepcopy(REMOTE[path])

    client = MagicMock(spec=DynatraceClient)
    client.get.side_effect = get
    return client


class TestFetch:
    def test_builds_resource_data(self):
        kinds = [RESOURCE_KINDS[n] for n in
                 ("dynatrace_dashboard_sharing", "dynatrace_dashboard", "dynatrace_credentials")]
        data = fetch(fake_client(), kinds)

        dashboards = data["dynatrace_dashboard"]
        assert [(r.name, r.id, r.req_inter) for r in dashboards] == \
            [("Overview", "d-1", False), ("Preset", "d-2", True)]
        sharing = data["dynatrace_dashboard_sharing"]
        assert [(r.name, r.id) for r in sharing] == [("Overview", "d-1"), ("Preset", "d-2")]
        creds = data["dynatrace_credentials"]
        assert [r.req_inter for r in creds] == [True, False]

    def test_failing_kind_skipped(self):
        data = fetch(fake_client(), [RESOURCE_KINDS[MZ], RESOURCE_KINDS["dynatrace_credentials"]])
        assert MZ not in data
        assert len(data["dynatrace_credentials"]) == 2

    def test_failing_object_skipped(self):
        client = fake_client()
        remote = dict(REMOTE)
        del remote["/api/config/v1/credentials/C-1"]

        def get(path, params=None):
            if path not in remote:
                raise requests.HTTPError("404")
            return copy.deepcopy(remote[path])
        client.get.side_effect = get

        data = fetch(client, [RESOURCE_KINDS["dynatrace_credentials"]])
        assert [r.id for r in data["dynatrace_credentials"]] == ["C-2"]


class TestDownload:
    def test_layout(self, tmp_path):
        kinds = resolve_kinds(["dashboard", "credentials"])
        config = DownloadConfig(str(tmp_path / "out"), commented_id=True)
        download(fake_client(), config, kinds)

        out = tmp_path / "out"
        dashboard_file = out / "dashboards" / "dashboards.Overview.tf"
        content = read(dashboard_file)
        assert content.startswith('# id = "d-1"')
        assert 'resource "dynatrace_dashboard_sharing" "Overview"' in content
        assert (out / "dashboards" / "providers.tf").exists()

        credentials = read(out / "credentials" / "credentials.synced.tf")
        assert '"role_id" = "r"' in credentials
        assert "credential_usage_summary" not in credentials

        assert sorted(os.listdir(out / REQUIRES_ATTENTION)) == \
            ["credentials.login.tf", "dashboard.Preset.tf"]
        assert not (out / "dashboard_sharing").exists()

        main_tf = read(out / "main.tf")
        assert 'module "dashboards"' in main_tf
        assert 'module "credentials"' in main_tf
        assert 'provider "dynatrace"' in main_tf


class TestResolveKinds:
    def test_all(self):
        assert len(resolve_kinds(None)) == len(RESOURCE_KINDS)

    def test_dashboard_brings_sharing(self):
        names = [k.name for k in resolve_kinds(["dashboard"])]
        assert names == ["dynatrace_dashboard", "dynatrace_dashboard_sharing"]

    def test_unknown(self):
        with pytest.raises(KeyError):
            resolve_kinds(["nope"])
