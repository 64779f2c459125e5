"""
Unit tests for flashguard.ini parsing and settings resolution.
"""

from pathlib import Path

import pytest

from flashguard.config.ini_parser import FlashConfigError, FlashIniConfig
from flashguard.config.settings import FlashSettings, load_settings, parse_order
from flashguard.deploy.programmer import DEFAULT_SUCCESS_PATTERN

SAMPLE_INI = """
[flash]
board_dir = boards/nano
strategy_order = nano-old, arduino
timeout = 120
poll_interval = 0.5

[strategy:nano-old]
programmer = arduino
baud = 57600
extra_args = -V -F
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "flashguard.ini").write_text(SAMPLE_INI)
    return tmp_path


class TestFlashIniConfig:
    """Tests for FlashIniConfig."""

    def test_missing_file(self, tmp_path: Path):
        """Test a missing file is a FlashConfigError."""
        with pytest.raises(FlashConfigError, match="not found"):
            FlashIniConfig(tmp_path / "flashguard.ini")

    def test_flash_options(self, project: Path):
        """Test the [flash] section is returned as strings."""
        options = FlashIniConfig(project / "flashguard.ini").get_flash_options()
        assert options["board_dir"] == "boards/nano"
        assert options["timeout"] == "120"

    def test_strategies(self, project: Path):
        """Test [strategy:<name>] sections become StrategyConfig objects."""
        strategies = FlashIniConfig(project / "flashguard.ini").get_strategies()

        assert list(strategies) == ["nano-old"]
        nano = strategies["nano-old"]
        assert nano.programmer == "arduino"
        assert nano.baud == 57600
        assert nano.mcu == "atmega328p"
        assert nano.extra_args == ["-V", "-F"]
        assert nano.success_pattern == DEFAULT_SUCCESS_PATTERN

    def test_strategy_missing_fields(self, tmp_path: Path):
        """Test required strategy fields are enforced."""
        ini = tmp_path / "flashguard.ini"
        ini.write_text("[strategy:broken]\nprogrammer = arduino\n")
        with pytest.raises(FlashConfigError, match="missing required fields: baud"):
            FlashIniConfig(ini).get_strategies()

    def test_strategy_bad_baud(self, tmp_path: Path):
        """Test a non-numeric baud rate is rejected."""
        ini = tmp_path / "flashguard.ini"
        ini.write_text("[strategy:broken]\nprogrammer = arduino\nbaud = fast\n")
        with pytest.raises(FlashConfigError, match="invalid baud"):
            FlashIniConfig(ini).get_strategies()


class TestLoadSettings:
    """Tests for layered settings."""

    def test_defaults(self, tmp_path: Path):
        """Test defaults without an ini file or environment."""
        settings = load_settings(project_dir=tmp_path, env={})

        assert settings.project_dir == tmp_path.resolve()
        assert settings.strategy_order == ["arduino", "stk500v1"]
        assert settings.timeout == 300
        assert settings.poll_interval == 1.0
        assert settings.board_path == tmp_path.resolve() / "boards" / "arduino-uno"
        assert settings.target_path == tmp_path.resolve() / "target" / "avr-none" / "release"
        assert settings.state_dir == Path.home() / ".flashguard"

    def test_ini_overrides_defaults(self, project: Path):
        """Test flashguard.ini values and strategies are applied."""
        settings = load_settings(project_dir=project, env={})

        assert settings.board_dir == Path("boards/nano")
        assert settings.strategy_order == ["nano-old", "arduino"]
        assert settings.timeout == 120
        assert settings.poll_interval == 0.5
        assert "nano-old" in settings.strategies
        assert "stk500v1" in settings.strategies

    def test_environment_overrides_ini(self, project: Path, tmp_path: Path):
        """Test FLASHGUARD_* variables win over the ini file."""
        env = {
            "FLASHGUARD_TIMEOUT": "42",
            "FLASHGUARD_STRATEGY_ORDER": "arduino",
            "FLASHGUARD_STATE_DIR": str(tmp_path / "state"),
            "FLASHGUARD_LAUNCHER": "background",
        }
        settings = load_settings(project_dir=project, env=env)

        assert settings.timeout == 42
        assert settings.strategy_order == ["arduino"]
        assert settings.state_dir == tmp_path / "state"
        assert settings.launcher == "background"

    def test_unknown_strategy_in_order(self, tmp_path: Path):
        """Test an order naming an undeclared strategy fails validation."""
        with pytest.raises(FlashConfigError, match="Unknown programmer strategies"):
            load_settings(project_dir=tmp_path, env={"FLASHGUARD_STRATEGY_ORDER": "usbasp"})

    def test_invalid_number(self, tmp_path: Path):
        """Test a non-numeric timeout is reported with its source."""
        with pytest.raises(FlashConfigError, match="environment"):
            load_settings(project_dir=tmp_path, env={"FLASHGUARD_TIMEOUT": "soon"})

    def test_unknown_ini_option(self, tmp_path: Path):
        """Test typos in [flash] are not silently ignored."""
        (tmp_path / "flashguard.ini").write_text("[flash]\ntimout = 10\n")
        with pytest.raises(FlashConfigError, match="Unknown option 'timout'"):
            load_settings(project_dir=tmp_path, env={})

    def test_settings_round_trip(self, project: Path):
        """Test settings survive serialization into a job ticket."""
        settings = load_settings(project_dir=project, env={})
        restored = FlashSettings.from_dict(settings.to_dict())
        assert restored == settings

    def test_parse_order(self):
        """Test comma separated strategy lists."""
        assert parse_order("stk500v1, arduino,") == ["stk500v1", "arduino"]
        assert parse_order("") == []
