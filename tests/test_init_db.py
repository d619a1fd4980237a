"""
Test Suite for the Database Bootstrap CLI
"""
import pytest

from runeprices.database.config import ENV_OVERRIDES
from runeprices.database.init_db import main, parse_args


@pytest.fixture
def config_file(tmp_path, closed_port, monkeypatch):
    """YAML config whose PostgreSQL server is unreachable"""
    for env_var in ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)

    def write(data_dir):
        path = tmp_path / 'database.yaml'
        path.write_text(
            "database:\n"
            "  host: 127.0.0.1\n"
            f"  port: {closed_port}\n"
            f"  data_dir: {data_dir}\n"
            "  probe_timeout: 0.5\n"
        )
        return path

    return write


class TestMain:
    """Test exit codes"""

    def test_fallback_bootstrap_succeeds(self, config_file, data_dir):
        assert main(['--config', str(config_file(data_dir))]) == 0
        assert (data_dir / 'runescape_prices.duckdb').exists()

    def test_rerun_is_safe(self, config_file, data_dir):
        path = str(config_file(data_dir))

        assert main(['--config', path]) == 0
        assert main(['--config', path, '--debug']) == 0

    def test_missing_config_fails(self, tmp_path):
        assert main(['--config', str(tmp_path / 'missing.yaml')]) == 1

    def test_unusable_data_dir_fails(self, config_file, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')

        assert main(['--config', str(config_file(blocker / 'data'))]) == 1


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])

        assert args.config is None
        assert args.debug is False
