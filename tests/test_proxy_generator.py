"""Tests for proxy_generator module."""

import subprocess
from unittest import mock

import pytest

from pvechores.config import ProxySettings
from pvechores.models import HostRecord, PreconditionError, PVEChoresError
from pvechores.proxy_generator import (
    DEFAULT_PORT,
    ProxyConfigGenerator,
    build_entries,
    load_port_map,
    map_port,
    read_host_records,
    render_caddyfile,
    render_custom_list,
    render_dnsmasq,
)


@pytest.fixture
def settings(tmp_path, ftl_db):
    """Proxy settings with every output under tmp_path."""
    db_path = ftl_db(
        [
            ("192.168.5.10", "plex.local"),
            ("127.0.0.1", "localhost"),
            ("192.168.5.20", "unknownhost.local"),
            ("192.168.5.49", "pihole.local"),
            ("192.168.5.30", None),
            ("192.168.5.31", "10.0.0.1"),
        ]
    )
    return ProxySettings(
        ftl_db=db_path,
        caddyfile=tmp_path / "caddy" / "Caddyfile",
        dnsmasq_conf=tmp_path / "dnsmasq.d" / "10-local.conf",
        custom_list=tmp_path / "pihole" / "custom.list",
        pihole_ip="192.168.5.49",
    )


class TestPortMapping:
    """Tests for hostname to port lookup."""

    def test_known_hostname(self):
        """Test exact-match lookup in the static table."""
        assert map_port("plex.local") == 32400
        assert map_port("pve2.local") == 8006
        assert map_port("docker.local") == 2375

    def test_unknown_hostname_gets_default(self):
        """Test unknown hostnames map to the default port."""
        assert map_port("unknownhost.local") == DEFAULT_PORT == 80

    def test_no_partial_matching(self):
        """Test lookup is exact, not prefix based."""
        assert map_port("plex.local.lan") == DEFAULT_PORT
        assert map_port("PLEX.local") == DEFAULT_PORT

    def test_load_port_map_overrides(self, tmp_path):
        """Test YAML overrides extend and replace the built-in table."""
        ports_file = tmp_path / "ports.yaml"
        ports_file.write_text("grafana.local: 3000\nplex.local: 32401\n")

        port_map = load_port_map(ports_file)

        assert port_map["grafana.local"] == 3000
        assert port_map["plex.local"] == 32401
        assert port_map["sonarr.local"] == 8989

    def test_load_port_map_rejects_non_mapping(self, tmp_path):
        """Test a YAML list is rejected."""
        ports_file = tmp_path / "ports.yaml"
        ports_file.write_text("- plex.local\n")

        with pytest.raises(PreconditionError):
            load_port_map(ports_file)

    def test_load_port_map_rejects_non_integer_port(self, tmp_path):
        """Test a port that is not a number is rejected."""
        ports_file = tmp_path / "ports.yaml"
        ports_file.write_text("plex.local: abc\n")

        with pytest.raises(PreconditionError, match="Invalid port 'abc' for plex.local"):
            load_port_map(ports_file)

    def test_load_port_map_rejects_bad_yaml(self, tmp_path):
        """Test a YAML syntax error is rejected."""
        ports_file = tmp_path / "ports.yaml"
        ports_file.write_text("plex.local: [\n")

        with pytest.raises(PreconditionError, match="Invalid YAML"):
            load_port_map(ports_file)

    def test_load_port_map_missing_file(self, tmp_path):
        """Test a missing ports file is rejected."""
        with pytest.raises(PreconditionError, match="Cannot read port file"):
            load_port_map(tmp_path / "missing.yaml")


class TestReadHostRecords:
    """Tests for reading the FTL database."""

    def test_filters_rows_without_hostname(self, settings):
        """Test rows without a lettered hostname are dropped."""
        records = read_host_records(settings.ftl_db)

        hostnames = [r.hostname for r in records]
        assert "10.0.0.1" not in hostnames
        assert None not in hostnames
        assert "plex.local" in hostnames
        assert "localhost" in hostnames

    def test_records_are_sorted_and_distinct(self, ftl_db):
        """Test output order is stable and duplicate pairs collapse."""
        db_path = ftl_db(
            [
                ("192.168.5.20", "sonarr.local"),
                ("192.168.5.10", "plex.local"),
                ("192.168.5.20", "sonarr.local"),
            ]
        )

        records = read_host_records(db_path)

        assert records == [
            HostRecord(ip="192.168.5.10", hostname="plex.local"),
            HostRecord(ip="192.168.5.20", hostname="sonarr.local"),
        ]

    def test_missing_database(self, tmp_path):
        """Test a missing database is a precondition failure."""
        with pytest.raises(PreconditionError):
            read_host_records(tmp_path / "missing.db")

    def test_database_without_table(self, tmp_path):
        """Test an unexpected schema is a precondition failure."""
        import sqlite3

        db_path = tmp_path / "empty.db"
        sqlite3.connect(db_path).close()

        with pytest.raises(PreconditionError):
            read_host_records(db_path)


class TestBuildEntries:
    """Tests for turning records into proxy entries."""

    def test_localhost_excluded(self):
        """Test no entry is ever built for localhost."""
        entries = build_entries([HostRecord("127.0.0.1", "localhost"), HostRecord("192.168.5.10", "plex.local")])

        assert [e.hostname for e in entries] == ["plex.local"]

    def test_plex_gets_rewrite_rule(self):
        """Test the media hostname gets the /web path rewrite."""
        (entry,) = build_entries([HostRecord("192.168.5.10", "plex.local")])

        assert entry.upstream == "http://192.168.5.10:32400"
        assert "@plex path /web*" in entry.extra_directives
        assert "rewrite @plex /web{path}" in entry.extra_directives

    def test_pihole_gets_admin_redirect(self):
        """Test the DNS service's own hostname redirects to its admin UI."""
        (entry,) = build_entries([HostRecord("192.168.5.49", "pihole.local")])

        assert entry.port == 80
        assert entry.extra_directives == ("redir / /admin/",)

    def test_unknown_host_default_port(self):
        """Test unknownhost.local routes to port 80."""
        (entry,) = build_entries([HostRecord("192.168.5.20", "unknownhost.local")])

        assert entry.upstream == "http://192.168.5.20:80"
        assert entry.extra_directives == ()

    def test_shared_address_keeps_both_hostnames(self):
        """Test two hostnames on one address both get entries."""
        entries = build_entries(
            [HostRecord("192.168.5.40", "pastebin.local"), HostRecord("192.168.5.40", "wastebin.local")]
        )

        assert [e.hostname for e in entries] == ["pastebin.local", "wastebin.local"]

    def test_hostname_on_two_addresses_keeps_first(self):
        """Test a hostname seen twice keeps its first address."""
        entries = build_entries(
            [HostRecord("192.168.5.10", "plex.local"), HostRecord("192.168.5.11", "plex.local")]
        )

        assert len(entries) == 1
        assert entries[0].ip == "192.168.5.10"


class TestRendering:
    """Tests for the rendered configuration text."""

    def test_caddyfile_plex_block(self):
        """Test the exact site block for plex.local."""
        entries = build_entries([HostRecord("192.168.5.10", "plex.local")])

        caddyfile = render_caddyfile(entries)

        assert caddyfile == (
            "{\n"
            "    auto_https off\n"
            "}\n"
            "\n"
            "plex.local {\n"
            "    reverse_proxy http://192.168.5.10:32400\n"
            "    @plex path /web*\n"
            "    rewrite @plex /web{path}\n"
            "}\n"
        )

    def test_caddyfile_without_entries(self):
        """Test only the global options block is written for no entries."""
        assert render_caddyfile([]) == "{\n    auto_https off\n}\n"

    def test_dnsmasq(self):
        """Test address lines for every entry."""
        entries = build_entries([HostRecord("192.168.5.10", "plex.local")])

        assert render_dnsmasq(entries) == (
            "# Local DNS Configuration for dnsmasq\n" "address=/plex.local/192.168.5.10\n"
        )

    def test_custom_list(self):
        """Test Pi-hole's own DNS entry."""
        assert render_custom_list("192.168.5.49") == (
            "# Custom local DNS records for Pi-hole\n" "192.168.5.49 pihole.local\n"
        )


class TestProxyConfigGenerator:
    """Tests for ProxyConfigGenerator."""

    def test_generate_writes_all_files(self, settings):
        """Test the three output files are written."""
        entries = ProxyConfigGenerator(settings).generate()

        assert [e.hostname for e in entries] == ["pihole.local", "plex.local", "unknownhost.local"]

        caddyfile = settings.caddyfile.read_text()
        assert "localhost" not in caddyfile
        assert "reverse_proxy http://192.168.5.10:32400" in caddyfile
        assert "reverse_proxy http://192.168.5.20:80" in caddyfile

        dnsmasq = settings.dnsmasq_conf.read_text()
        assert "address=/plex.local/192.168.5.10\n" in dnsmasq
        assert "localhost" not in dnsmasq

        assert settings.custom_list.read_text().endswith("192.168.5.49 pihole.local\n")

    def test_generate_is_idempotent(self, settings):
        """Test regenerating from the same data gives byte-identical files."""
        generator = ProxyConfigGenerator(settings)
        paths = [settings.caddyfile, settings.dnsmasq_conf, settings.custom_list]

        generator.generate()
        first = [p.read_bytes() for p in paths]
        generator.generate()
        second = [p.read_bytes() for p in paths]

        assert first == second

    def test_generate_discards_manual_edits(self, settings):
        """Test output files are truncated and rewritten."""
        settings.caddyfile.parent.mkdir(parents=True)
        settings.caddyfile.write_text("manual.local {\n}\n")

        ProxyConfigGenerator(settings).generate()

        assert "manual.local" not in settings.caddyfile.read_text()

    @mock.patch("pvechores.proxy_generator.shutil.which")
    @mock.patch("subprocess.run")
    def test_ensure_caddy_already_installed(self, mock_run, mock_which, settings):
        """Test nothing is installed when caddy is on PATH."""
        mock_which.return_value = "/usr/bin/caddy"

        assert ProxyConfigGenerator(settings).ensure_caddy() is False
        mock_run.assert_not_called()

    @mock.patch("pvechores.proxy_generator.shutil.which")
    @mock.patch("subprocess.run")
    def test_ensure_caddy_installs(self, mock_run, mock_which, settings):
        """Test caddy and sqlite3 are installed with apt."""
        mock_which.return_value = None

        assert ProxyConfigGenerator(settings).ensure_caddy() is True
        assert mock_run.call_args_list[1][0][0] == ["apt-get", "install", "-y", "caddy", "sqlite3"]

    @mock.patch("pvechores.proxy_generator.shutil.which")
    @mock.patch("subprocess.run")
    def test_ensure_caddy_install_failure(self, mock_run, mock_which, settings):
        """Test a failed install is a precondition error."""
        mock_which.return_value = None
        mock_run.side_effect = subprocess.CalledProcessError(100, ["apt-get"], stderr="E: no network")

        with pytest.raises(PreconditionError):
            ProxyConfigGenerator(settings).ensure_caddy()

    @mock.patch("subprocess.run")
    def test_restart_services(self, mock_run, settings):
        """Test pihole-FTL and caddy are restarted."""
        ProxyConfigGenerator(settings).restart_services()

        commands = [call[0][0] for call in mock_run.call_args_list]
        assert commands == [
            ["systemctl", "restart", "pihole-FTL"],
            ["systemctl", "restart", "caddy"],
        ]

    @mock.patch("subprocess.run")
    def test_restart_failure(self, mock_run, settings):
        """Test a failed restart is reported as a chore error."""
        mock_run.side_effect = subprocess.CalledProcessError(1, ["systemctl"], stderr="unit not found")

        with pytest.raises(PVEChoresError, match="pihole-FTL"):
            ProxyConfigGenerator(settings).restart_services()
