"""Test characteristic value codecs."""

from datetime import datetime

import pytest

from watchlink.exceptions import DecodeError, UnsupportedServiceError
from watchlink.protocol import codec
from watchlink.protocol.services import Service
from watchlink.protocol.update import DataPacket, StartCommand
from watchlink.models.enums import UpdateKind


class TestDecodeTelemetry:
    """Test decoding of telemetry values."""

    def test_battery_level(self):
        assert codec.decode(Service.BATTERY_LEVEL, b"\x57") == 87

    def test_battery_level_over_100_rejected(self):
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(Service.BATTERY_LEVEL, b"\x65")
        assert exc_info.value.service == Service.BATTERY_LEVEL
        assert exc_info.value.offset == 0

    def test_battery_level_trailing_bytes(self):
        """Extra bytes are reported at the first unexpected offset."""
        with pytest.raises(DecodeError, match="battery_level: malformed frame at byte 1"):
            codec.decode(Service.BATTERY_LEVEL, b"\x50\x00")

    def test_heart_rate_uint8(self):
        assert codec.decode(Service.HEART_RATE, b"\x00\x48") == 72

    def test_heart_rate_uint16(self):
        assert codec.decode(Service.HEART_RATE, b"\x01\x2c\x01") == 300

    def test_heart_rate_ignores_rr_intervals(self):
        assert codec.decode(Service.HEART_RATE, b"\x10\x48\x00\x04") == 72

    def test_heart_rate_truncated(self):
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(Service.HEART_RATE, b"\x01\x2c")
        assert exc_info.value.service == Service.HEART_RATE
        assert exc_info.value.offset == 2

    def test_heart_rate_empty(self):
        with pytest.raises(DecodeError, match="empty frame"):
            codec.decode(Service.HEART_RATE, b"")

    def test_step_count(self):
        assert codec.decode(Service.STEP_COUNT, b"\xd2\x04\x00\x00") == 1234

    def test_step_count_short_frame(self):
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(Service.STEP_COUNT, b"\xd2\x04")
        assert exc_info.value.offset == 2
        assert "need 4 bytes" in str(exc_info.value)

    def test_firmware_version_strips_padding(self):
        assert codec.decode(Service.FIRMWARE_VERSION, b"1.13.0\x00\x00") == "1.13.0"

    def test_firmware_version_non_printable(self):
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(Service.FIRMWARE_VERSION, b"1.1\x013")
        assert exc_info.value.offset == 3

    def test_accepts_bytearray(self):
        """bleak delivers notifications as bytearray."""
        assert codec.decode(Service.BATTERY_LEVEL, bytearray([42])) == 42

    def test_write_only_service_not_decodable(self):
        with pytest.raises(UnsupportedServiceError):
            codec.decode(Service.CURRENT_TIME, b"\x00" * 10)


class TestEncode:
    """Test encoding of written values."""

    def test_current_time_layout(self):
        """2026-10-17 is a Saturday (weekday 6)."""
        data = codec.encode(Service.CURRENT_TIME, datetime(2026, 10, 17, 13, 45, 30, 500000))
        assert data == bytes([0xEA, 0x07, 10, 17, 13, 45, 30, 6, 128, 1])

    def test_current_time_rejects_wrong_type(self):
        with pytest.raises(TypeError):
            codec.encode(Service.CURRENT_TIME, "now")

    def test_update_control_start(self):
        command = StartCommand(
            kind=UpdateKind.FIRMWARE, size=4096, checksum=0x12345678, chunk_size=256, version="1.14.0"
        )
        assert codec.encode(Service.UPDATE_CONTROL, command) == command.to_bytes()

    def test_update_data_packet(self):
        data = codec.encode(Service.UPDATE_DATA, DataPacket(index=3, payload=b"\xaa\xbb"))
        assert data == b"\x03\x00\x00\x00\xaa\xbb"

    def test_update_data_requires_packet(self):
        with pytest.raises(TypeError):
            codec.encode(Service.UPDATE_DATA, b"\x00")

    def test_read_only_service_not_writable(self):
        with pytest.raises(UnsupportedServiceError):
            codec.encode(Service.BATTERY_LEVEL, 50)
