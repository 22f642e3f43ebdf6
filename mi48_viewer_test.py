"""Unit tests for mi48_viewer.py."""

from __future__ import annotations

import sys

import cv2
import numpy as np
import pytest

import mi48_viewer
from mi48_camera import FRAME_RATE
from mi48_camera import InvalidArgumentError
from mi48_camera import SENSOR_GEOMETRY
from mi48_camera import MI48Camera
from mi48_camera import MI48Error
from mi48_camera import encode_frame
from mi48_camera_test import FakeSerial
from mi48_camera_test import device_registers
from mi48_camera_test import make_image_payload
from mi48_viewer import (
    COLORMAPS,
    AGCMode,
    ColormapID,
    MI48Viewer,
    ScaleMode,
    TemporalAGC,
    agc_minmax,
    apply_colormap,
    capture,
    dde,
    get_colormap,
    save_png,
    tnr,
)


class TestColormaps:
    """Tests for colormap functions."""

    def test_all_colormaps_exist(self):
        for cmap_id in ColormapID:
            assert cmap_id in COLORMAPS
            lut = COLORMAPS[cmap_id]
            assert lut.shape == (256, 3)
            assert lut.dtype == np.uint8

    def test_get_colormap_by_int(self):
        lut = get_colormap(0)  # WHITE_HOT
        assert lut.shape == (256, 3)

    def test_white_hot_is_grayscale(self):
        lut = get_colormap(ColormapID.WHITE_HOT)
        assert np.all(lut[0] == [0, 0, 0])
        assert np.all(lut[255] == [255, 255, 255])

    def test_black_hot_is_inverse_grayscale(self):
        lut = get_colormap(ColormapID.BLACK_HOT)
        assert lut[0, 0] == 255
        assert lut[255, 0] == 0

    def test_apply_colormap_values(self):
        img = np.array([[0, 127, 255]], dtype=np.uint8)
        result = apply_colormap(img, ColormapID.WHITE_HOT)
        assert result.shape == (1, 3, 3)
        assert np.all(result[0, 0] == [0, 0, 0])
        assert np.all(result[0, 2] == [255, 255, 255])


class TestAGC:
    """Tests for Auto Gain Control."""

    def test_temporal_basic(self):
        img = np.linspace(2900, 3100, 100).reshape(10, 10).astype(np.uint16)
        result = TemporalAGC()(img, pct=1.0)
        assert result.shape == img.shape
        assert result.dtype == np.uint8
        assert result.min() == 0
        assert result.max() == 255

    def test_temporal_smoothing(self):
        agc = TemporalAGC(ema_alpha=0.5)
        agc(np.array([[0, 1000]], dtype=np.uint16), pct=0.0)
        agc(np.array([[1000, 2000]], dtype=np.uint16), pct=0.0)
        assert agc.low == pytest.approx(500.0)
        assert agc.high == pytest.approx(1500.0)

    def test_temporal_reset(self):
        agc = TemporalAGC()
        agc(np.array([[0, 1000]], dtype=np.uint16))
        agc.reset()
        assert agc.low is None
        assert agc.high is None

    def test_uniform_image(self):
        img = np.full((10, 10), 3000, dtype=np.uint16)
        assert np.all(TemporalAGC()(img) == 0)
        assert np.all(agc_minmax(img) == 0)

    def test_minmax(self):
        img = np.array([[1000, 1500, 2000]], dtype=np.uint16)
        result = agc_minmax(img)
        assert result[0, 0] == 0
        assert result[0, 1] == 127
        assert result[0, 2] == 255


class TestDDE:
    """Tests for Digital Detail Enhancement."""

    def test_dde_zero_strength(self):
        img = np.random.randint(0, 256, (50, 50), dtype=np.uint8)
        np.testing.assert_array_equal(dde(img, strength=0), img)

    def test_dde_enhances_edges(self):
        img = np.zeros((20, 20), dtype=np.uint8)
        img[:, 10:] = 200
        result = dde(img, strength=1.0, kernel_size=3)
        edge_original = np.abs(img[:, 9].astype(int) - img[:, 10].astype(int)).mean()
        edge_enhanced = np.abs(result[:, 9].astype(int) - result[:, 10].astype(int)).mean()
        assert edge_enhanced >= edge_original


class TestTNR:
    """Tests for Temporal Noise Reduction."""

    def test_tnr_first_frame(self):
        img = np.full((10, 10), 1000, dtype=np.uint16)
        np.testing.assert_array_equal(tnr(img, None), img)

    def test_tnr_blending(self):
        prev = np.zeros((10, 10), dtype=np.uint16)
        curr = np.full((10, 10), 1000, dtype=np.uint16)
        assert tnr(curr, prev, alpha=0.5)[0, 0] == pytest.approx(500, abs=1)

    def test_tnr_shape_change(self):
        prev = np.zeros((4, 4), dtype=np.uint16)
        curr = np.full((10, 10), 1000, dtype=np.uint16)
        np.testing.assert_array_equal(tnr(curr, prev), curr)


class TestRender:
    """Tests for frame rendering."""

    def test_render_shape(self):
        viewer = MI48Viewer()
        thermal = np.random.randint(2900, 3100, SENSOR_GEOMETRY[1].shape).astype(np.uint16)
        img = viewer._render(thermal)
        # 2x upscale then zoom
        assert img.shape == (62 * 2 * viewer.zoom, 80 * 2 * viewer.zoom, 3)
        assert img.dtype == np.uint8

    def test_render_rotated_without_scaling(self):
        viewer = MI48Viewer()
        viewer.scale_mode = ScaleMode.OFF
        viewer.agc_mode = AGCMode.MINMAX
        viewer.rotation = 90
        viewer.zoom = 1
        thermal = np.random.randint(2900, 3100, (32, 48)).astype(np.uint16)
        assert viewer._render(thermal).shape == (48, 32, 3)


class TestCapture:
    """Tests for single-frame capture."""

    def _patch_camera(self, monkeypatch: pytest.MonkeyPatch, fake: FakeSerial) -> None:
        def fake_open(port_name=None, timeout=None, queue_size=10):
            camera = MI48Camera(port=fake, queue_size=queue_size)
            camera.init()
            return camera

        monkeypatch.setattr(mi48_viewer, "open_camera", fake_open)

    def test_save_png_16bit(self, tmp_path):
        path = str(tmp_path / "frame.png")
        pixels = np.arange(12, dtype=np.uint16).reshape(3, 4) * 1000
        save_png(path, pixels)
        loaded = cv2.imread(path, cv2.IMREAD_UNCHANGED)
        assert loaded.dtype == np.uint16
        np.testing.assert_array_equal(loaded, pixels)

    def test_capture(self, monkeypatch, tmp_path):
        fake = FakeSerial(
            device_registers(), image_payload=make_image_payload(SENSOR_GEOMETRY[1])
        )
        self._patch_camera(monkeypatch, fake)
        path = str(tmp_path / "capture.png")

        pixels = capture(path, fps=12.75)

        assert pixels.shape == (62, 80)
        assert fake.registers[FRAME_RATE.address] == 2
        assert fake.closed
        loaded = cv2.imread(path, cv2.IMREAD_UNCHANGED)
        assert np.all(loaded == 3000)

    def test_capture_stream_error(self, monkeypatch, tmp_path):
        fake = FakeSerial(device_registers(), auto_stream=False)
        self._patch_camera(monkeypatch, fake)

        def feed_bad_frame_on_start(data: bytes) -> int:
            n = FakeSerial.write(fake, data)
            if b"WREGB102" in data:
                fake.feed(encode_frame("GFRA", b"\x00" * 4))
            return n

        fake.write = feed_bad_frame_on_start  # type: ignore[method-assign]
        with pytest.raises(MI48Error):
            capture(str(tmp_path / "never.png"))
        assert fake.closed

    def test_capture_rejected_frame_rate_closes_port(self, monkeypatch, tmp_path):
        fake = FakeSerial(device_registers())
        self._patch_camera(monkeypatch, fake)

        with pytest.raises(InvalidArgumentError):
            capture(str(tmp_path / "never.png"), fps=30.0)
        assert fake.closed


class TestViewerRun:
    """Tests for the viewer main loop with the window stubbed out."""

    def _setup(self, monkeypatch: pytest.MonkeyPatch, fake: FakeSerial) -> list[int]:
        def fake_open(port_name=None, timeout=None, queue_size=10):
            camera = MI48Camera(port=fake, queue_size=queue_size)
            camera.init()
            return camera

        key_polls: list[int] = []

        def wait_key(delay: int) -> int:
            key_polls.append(delay)
            return ord("q") if len(key_polls) >= 3 else 255

        monkeypatch.setattr(mi48_viewer, "open_camera", fake_open)
        monkeypatch.setattr(mi48_viewer.cv2, "namedWindow", lambda *args: None)
        monkeypatch.setattr(mi48_viewer.cv2, "imshow", lambda *args: None)
        monkeypatch.setattr(mi48_viewer.cv2, "waitKey", wait_key)
        monkeypatch.setattr(mi48_viewer.cv2, "getWindowProperty", lambda *args: 1.0)
        monkeypatch.setattr(mi48_viewer.cv2, "destroyAllWindows", lambda: None)
        return key_polls

    def test_rejected_frame_rate_closes_port(self, monkeypatch):
        fake = FakeSerial(device_registers())
        self._setup(monkeypatch, fake)

        with pytest.raises(InvalidArgumentError):
            MI48Viewer(fps=30.0).run()
        assert fake.closed

    def test_quit_while_stream_stalled(self, monkeypatch):
        # Device never sends a frame
        fake = FakeSerial(device_registers(), auto_stream=False)
        key_polls = self._setup(monkeypatch, fake)

        viewer = MI48Viewer()
        viewer.run()

        assert len(key_polls) == 3
        assert viewer._last_display is None
        assert fake.closed

    def test_quit_while_streaming(self, monkeypatch):
        fake = FakeSerial(
            device_registers(), image_payload=make_image_payload(SENSOR_GEOMETRY[1])
        )
        key_polls = self._setup(monkeypatch, fake)

        viewer = MI48Viewer()
        viewer.run()

        assert len(key_polls) == 3
        assert viewer._last_display is not None
        assert fake.closed


def _run_tests(test_file: str) -> None:
    """Run pytest on this file."""
    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


if __name__ == "__main__":
    _run_tests(__file__)
