"""End-to-end device session tests against a scripted LA core."""

import struct
import threading
import time

import pytest

from ipdbg_la.acquisition import CaptureCollector, State
from ipdbg_la.errors import AcquisitionError, IpdbgError, ProtocolMismatchError
from ipdbg_la.framing import CMD_GET_BUS_WIDTHS, CMD_GET_LA_ID, CMD_RESET, CMD_START
from ipdbg_la.device import IpdbgDevice, generate_session_id
from ipdbg_la.trigger import ChannelTrigger, TriggerMatch

TIMEOUT = 0.02


def _open(link, data_width=8, addr_width=4, ident=b"IDBG"):
    link.feed(ident + struct.pack("<II", data_width, addr_width))
    device = IpdbgDevice(link, receive_timeout=TIMEOUT)
    device.open()
    link.tx.clear()
    return device


class TestGenerateSessionId:
    def test_length(self):
        assert len(generate_session_id()) == 8

    def test_unique(self):
        assert len({generate_session_id() for _ in range(100)}) == 100


class TestOpen:
    def test_reset_then_handshake(self, fake_link):
        fake_link.feed(b"IDBG" + struct.pack("<II", 8, 10))
        device = IpdbgDevice(fake_link, receive_timeout=TIMEOUT)
        caps = device.open()
        assert fake_link.tx == bytes([CMD_RESET, CMD_GET_LA_ID, CMD_GET_BUS_WIDTHS])
        assert caps.limit_samples_max == 1024
        assert device.params.limit_samples == 1024
        assert device.params.capture_ratio == 50
        assert device.vectors.width_bytes == 1

    def test_bad_identity(self, fake_link):
        fake_link.feed(b"XXXX")
        device = IpdbgDevice(fake_link, receive_timeout=TIMEOUT)
        with pytest.raises(ProtocolMismatchError):
            device.open()
        assert device.caps is None

    def test_not_negotiated(self, fake_link):
        device = IpdbgDevice(fake_link)
        with pytest.raises(IpdbgError, match="has not been negotiated"):
            device.configure(limit_samples=4)


class TestConfigure:
    def test_limits(self, fake_link):
        device = _open(fake_link)
        params = device.configure(limit_samples=8, capture_ratio=25)
        assert params.limit_samples == 8
        assert params.capture_ratio == 25

    def test_limit_samples_above_max(self, fake_link):
        device = _open(fake_link)
        with pytest.raises(ValueError, match="limit_samples"):
            device.configure(limit_samples=17)

    def test_limit_samples_zero(self, fake_link):
        device = _open(fake_link)
        with pytest.raises(ValueError):
            device.configure(limit_samples=0)

    def test_capture_ratio_range(self, fake_link):
        device = _open(fake_link)
        with pytest.raises(ValueError, match="capture_ratio"):
            device.configure(capture_ratio=101)


class TestStartAcquisition:
    def test_wire_sequence(self, fake_link):
        device = _open(fake_link, addr_width=10)
        device.configure(limit_samples=1000, capture_ratio=50)
        device.start_acquisition([ChannelTrigger(5, TriggerMatch.RISING)], CaptureCollector())

        expected = bytes([
            0xF0, 0xF1, 0xF3, 0x20,
            0xF0, 0xF1, 0xF7, 0x20,
            0xF0, 0xF9, 0xFB, 0x20,
            0xF0, 0xF9, 0xFF, 0x00,
            0xF0, 0xF5, 0xF6, 0x00,
            0x0F, 0x1F, 0x01, 0xF3,  # delay 499
            CMD_START,
        ])
        assert fake_link.tx == expected
        assert device.params.delay_value == 499
        assert device.acquiring

    def test_channel_beyond_data_width(self, fake_link):
        device = _open(fake_link, data_width=4)
        with pytest.raises(ValueError, match="out of range"):
            device.start_acquisition([ChannelTrigger(6, TriggerMatch.ONE)], CaptureCollector())

    def test_already_acquiring(self, fake_link):
        device = _open(fake_link)
        device.start_acquisition([], CaptureCollector())
        with pytest.raises(IpdbgError, match="already acquiring"):
            device.start_acquisition([], CaptureCollector())


class TestRunAcquisition:
    def test_full_capture(self, fake_link):
        device = _open(fake_link)
        device.configure(limit_samples=4, capture_ratio=50)
        fake_link.chunk_limit = 1
        fake_link.feed(b"\x10\x20\x30\x40")
        collector = CaptureCollector()

        decoder = device.run_acquisition([], collector, timeout=1.0)

        assert decoder.state is State.DONE
        assert collector.ended
        assert collector.data == b"\x10\x20\x30\x40"
        # delay = int(3 / 100 * 50) = 1
        assert collector.trigger_position == 1
        assert not device.acquiring

    def test_runlength_capture(self, fake_link):
        link = fake_link
        link.feed(b"idbg" + struct.pack("<I", 0x02) + struct.pack("<II", 8, 2) + bytes([8]))
        device = IpdbgDevice(link, receive_timeout=TIMEOUT)
        caps = device.open()
        assert caps.runlength_code_width == 8

        device.configure(capture_ratio=50)
        link.feed(bytes([0x02, 0xA0, 0x00, 0xB0, 0x00, 0xC0, 0x01, 0xD0]))
        collector = CaptureCollector()
        device.run_acquisition([ChannelTrigger(0, TriggerMatch.EDGE)], collector, timeout=1.0)

        # raw delay = int(3 / 100 * 50) = 1 -> first raw sample repeats 3 times
        assert collector.data == b"\xA0\xA0\xA0\xB0\xC0\xD0\xD0"
        assert collector.trigger_position == 3

    def test_timeout_aborts(self, fake_link):
        device = _open(fake_link)
        device.configure(limit_samples=4)
        fake_link.feed(b"\x01")
        collector = CaptureCollector()
        with pytest.raises(AcquisitionError, match="timed out"):
            device.run_acquisition([], collector, timeout=0.02)
        assert collector.ended
        assert device.decoder is None
        assert not device.acquiring


class TestStopAndClose:
    def test_stop_aborts_and_resets(self, fake_link):
        device = _open(fake_link)
        collector = CaptureCollector()
        device.start_acquisition([], collector)
        fake_link.tx.clear()
        device.stop_acquisition()
        assert collector.ended
        assert fake_link.tx == bytes([CMD_RESET])

    def test_close(self, fake_link):
        device = _open(fake_link)
        collector = CaptureCollector()
        device.start_acquisition([], collector)
        device.close()
        assert collector.ended
        assert fake_link.closed

    def test_stop_from_another_thread(self, fake_link):
        device = _open(fake_link)
        device.configure(limit_samples=4)
        collector = CaptureCollector()
        errors = []

        def capture():
            try:
                device.run_acquisition([], collector, timeout=5.0)
            except AcquisitionError as e:
                errors.append(e)

        worker = threading.Thread(target=capture)
        worker.start()
        deadline = time.monotonic() + 1.0
        while not device.acquiring and time.monotonic() < deadline:
            time.sleep(0.001)
        device.stop_acquisition()
        worker.join(timeout=2.0)

        assert not worker.is_alive()
        assert len(errors) == 1
        assert "Acquisition aborted" in str(errors[0])
        assert collector.ended
        assert collector.total_samples == 0
        assert collector.sample_values() == []
        assert not device.acquiring
        assert fake_link.tx.endswith(bytes([CMD_RESET]))


class TestDecoderRelease:
    def test_released_when_done(self, fake_link):
        device = _open(fake_link)
        device.configure(limit_samples=2)
        fake_link.feed(b"\x01\x02")
        decoder = device.run_acquisition([], CaptureCollector(), timeout=1.0)
        assert decoder.state is State.DONE
        assert device.decoder is None

    def test_released_when_stopped(self, fake_link):
        device = _open(fake_link)
        device.start_acquisition([], CaptureCollector())
        assert device.decoder is not None
        device.stop_acquisition()
        assert device.decoder is None

    def test_second_acquisition_after_first(self, fake_link):
        device = _open(fake_link)
        device.configure(limit_samples=1)
        fake_link.feed(b"\x01")
        device.run_acquisition([], CaptureCollector(), timeout=1.0)
        fake_link.feed(b"\x02")
        collector = CaptureCollector()
        device.run_acquisition([], collector, timeout=1.0)
        assert collector.data == b"\x02"
