"""Unit tests for post-flash serial capture."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import serial

from flashguard.deploy.monitor import SerialCapture


class TestSerialCapture:
    """Tests for SerialCapture."""

    def test_source_uses_serial(self, tmp_path: Path):
        """Test detection of Serial usage in firmware source."""
        echo = tmp_path / "serial_echo.rs"
        echo.write_text("let mut serial = Serial::new(dp.USART0, 9600);")
        blink = tmp_path / "blink.rs"
        blink.write_text("led.toggle();")

        assert SerialCapture.source_uses_serial(echo)
        assert not SerialCapture.source_uses_serial(blink)
        assert not SerialCapture.source_uses_serial(tmp_path / "missing.rs")

    def test_capture_writes_output_and_pointer(self, tmp_path: Path):
        """Test captured bytes land in the output file and the pointer is updated."""
        ser = MagicMock()
        ser.__enter__.return_value = ser
        chunks = iter([b"Hello", b" world\n"])
        ser.read.side_effect = lambda size: next(chunks, b"")
        output = tmp_path / "logs" / "serial_blink_job_1.txt"
        pointer = tmp_path / "latest_serial.txt"

        with patch("flashguard.deploy.monitor.serial.Serial", return_value=ser) as mock_serial:
            result = SerialCapture(baud=9600, seconds=0.05).capture("/dev/ttyACM0", output, pointer)

        assert result == output
        assert output.read_bytes().startswith(b"Hello world")
        assert pointer.read_text() == str(output)
        assert mock_serial.call_args[0][:2] == ("/dev/ttyACM0", 9600)

    def test_capture_failure_returns_none(self, tmp_path: Path):
        """Test an unopenable port is reported as None."""
        pointer = tmp_path / "latest_serial.txt"
        with patch("flashguard.deploy.monitor.serial.Serial", side_effect=serial.SerialException("busy")):
            assert SerialCapture(seconds=0.01).capture("/dev/ttyACM0", tmp_path / "out.txt", pointer) is None
        assert not pointer.exists()
