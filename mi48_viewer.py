#!/usr/bin/env python3
"""MI48 Thermal Camera Viewer.

Live display and single-frame capture for MI48 thermal camera modules.

Controls:
  q - Quit           +/- - Zoom
  r - Rotate 90°     c - Colormap
  m - Mirror         h - Help
  space - Screenshot D - Dump raw data
  f - Frame rate     a - AGC mode
  x - Scale mode     p - Enhanced (CLAHE+DDE)
  d - Toggle DDE     t - Toggle reticule
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Callable, cast

import logging
import time

from numpy.typing import NDArray

import cv2
import numpy as np

from mi48_camera import (
    ChannelClosed,
    FrameChannel,
    MI48Camera,
    MI48Error,
    open_camera,
)


# =============================================================================
# Colormaps
# =============================================================================


class ColormapID(IntEnum):
    """Colormap IDs."""

    WHITE_HOT = 0
    BLACK_HOT = 1
    RAINBOW = 2
    IRONBOW = 3
    MILITARY = 4
    SEPIA = 5


class ScaleMode(IntEnum):
    """2x upscaling interpolation modes."""

    OFF = 0  # No upscaling
    NEAREST = 1  # Nearest neighbor (blocky, fast)
    BILINEAR = 2  # Bilinear (smooth, fast)
    BICUBIC = 3  # Bicubic (sharper than bilinear)
    LANCZOS = 4  # Lanczos (sharpest, slowest)


class AGCMode(IntEnum):
    """Auto Gain Control modes."""

    TEMPORAL_1 = 0  # EMA smoothed, 1% percentile
    TEMPORAL_5 = 1  # EMA smoothed, 5% percentile
    MINMAX = 2  # Per-frame min/max, no smoothing


AGC_PERCENTILES = {
    AGCMode.TEMPORAL_1: 1.0,
    AGCMode.TEMPORAL_5: 5.0,
}


SCALE_INTERP = {
    ScaleMode.NEAREST: cv2.INTER_NEAREST,
    ScaleMode.BILINEAR: cv2.INTER_LINEAR,
    ScaleMode.BICUBIC: cv2.INTER_CUBIC,
    ScaleMode.LANCZOS: cv2.INTER_LANCZOS4,
}

# Frame rate divisors cycled with 'f'
FRAME_RATE_DIVISORS = (1, 2, 4, 8)

# Seconds to wait for a frame before pumping the window again
FRAME_POLL_INTERVAL = 0.1


# Colormaps (BGR format for OpenCV)
COLORMAPS: dict[ColormapID, NDArray[np.uint8]] = {}

# Color constants
COLOR_RETICULE = (0, 255, 0)
COLOR_TEXT = (255, 255, 255)


def _cv_lut(colormap: int) -> NDArray[np.uint8]:
    """Extract 256x3 LUT from OpenCV colormap."""
    gray = np.arange(256, dtype=np.uint8).reshape(1, 256)
    colored = cv2.applyColorMap(gray, colormap)
    return cast(NDArray[np.uint8], colored.reshape(256, 3))


def _init_colormaps() -> None:
    """Initialize colormap lookup tables."""
    ramp = np.arange(256, dtype=np.uint8)
    # White hot: grayscale
    lut = np.zeros((256, 3), dtype=np.uint8)
    lut[:, 0] = lut[:, 1] = lut[:, 2] = ramp
    COLORMAPS[ColormapID.WHITE_HOT] = lut
    # Black hot: inverted grayscale
    lut = np.zeros((256, 3), dtype=np.uint8)
    lut[:, 0] = lut[:, 1] = lut[:, 2] = 255 - ramp
    COLORMAPS[ColormapID.BLACK_HOT] = lut
    COLORMAPS[ColormapID.RAINBOW] = _cv_lut(cv2.COLORMAP_JET)
    COLORMAPS[ColormapID.IRONBOW] = _cv_lut(cv2.COLORMAP_INFERNO)
    # Military: green-tinted grayscale (BGR)
    lut = np.zeros((256, 3), dtype=np.uint8)
    lut[:, 0] = (ramp * 0.2).astype(np.uint8)
    lut[:, 1] = ramp
    lut[:, 2] = (ramp * 0.3).astype(np.uint8)
    COLORMAPS[ColormapID.MILITARY] = lut
    # Sepia: brown-tinted grayscale
    lut = np.zeros((256, 3), dtype=np.uint8)
    lut[:, 0] = (ramp * 0.4).astype(np.uint8)
    lut[:, 1] = (ramp * 0.7).astype(np.uint8)
    lut[:, 2] = ramp
    COLORMAPS[ColormapID.SEPIA] = lut


_init_colormaps()


def get_colormap(cmap_id: ColormapID | int) -> NDArray[np.uint8]:
    """Get colormap LUT by ID.

    Returns:
        256x3 uint8 array (BGR).
    """
    return COLORMAPS[ColormapID(cmap_id)]


def apply_colormap(
    img_u8: NDArray[np.uint8], cmap_id: ColormapID | int
) -> NDArray[np.uint8]:
    """Apply colormap to grayscale image.

    Args:
        img_u8: 8-bit grayscale image (H×W).
        cmap_id: Colormap ID.

    Returns:
        BGR color image (H×W×3).
    """
    return get_colormap(cmap_id)[img_u8]


# =============================================================================
# Image Processing
# =============================================================================


class TemporalAGC:
    """AGC with EMA-smoothed percentile bounds.

    Holds the smoothed bounds between frames, so use one instance per stream.
    """

    def __init__(self, ema_alpha: float = 0.1) -> None:
        self.ema_alpha = ema_alpha
        self.low: float | None = None
        self.high: float | None = None

    def reset(self) -> None:
        self.low = self.high = None

    def __call__(self, img: NDArray[np.uint16], pct: float = 1.0) -> NDArray[np.uint8]:
        low = float(np.percentile(img, pct))
        high = float(np.percentile(img, 100.0 - pct))
        if self.low is None or self.high is None:
            self.low, self.high = low, high
        else:
            self.low = self.ema_alpha * low + (1 - self.ema_alpha) * self.low
            self.high = self.ema_alpha * high + (1 - self.ema_alpha) * self.high
        return _stretch(img, self.low, self.high)


def agc_minmax(img: NDArray[np.uint16]) -> NDArray[np.uint8]:
    """AGC stretching the frame's own min/max to 0-255."""
    return _stretch(img, float(img.min()), float(img.max()))


def _stretch(img: NDArray[np.uint16], low: float, high: float) -> NDArray[np.uint8]:
    if high <= low:
        return np.zeros(img.shape, dtype=np.uint8)
    normalized = (img.astype(np.float32) - low) / (high - low)
    return (np.clip(normalized, 0.0, 1.0) * 255).astype(np.uint8)


def dde(
    img_u8: NDArray[np.uint8],
    strength: float = 0.5,
    kernel_size: int = 3,
) -> NDArray[np.uint8]:
    """Apply Digital Detail Enhancement (edge sharpening).

    Uses unsharp masking: enhanced = original + strength * (original - blurred)

    Args:
        img_u8: Input 8-bit image.
        strength: Enhancement strength (0.0-1.0, default 0.5).
        kernel_size: Kernel size for high-pass filter (default 3).

    Returns:
        Enhanced 8-bit image.
    """
    if strength <= 0:
        return img_u8

    ksize = kernel_size | 1  # Ensure odd
    blurred = cv2.GaussianBlur(img_u8, (ksize, ksize), 0)

    img_f = img_u8.astype(np.float32)
    enhanced = img_f + strength * (img_f - blurred.astype(np.float32))
    return np.clip(enhanced, 0, 255).astype(np.uint8)


def tnr(
    img: NDArray[np.uint16],
    prev_img: NDArray[np.uint16] | None,
    alpha: float = 0.3,
) -> NDArray[np.uint16]:
    """Apply Temporal Noise Reduction.

    Blends current frame with previous frame to reduce temporal noise.

    Args:
        img: Current frame.
        prev_img: Previous frame (or None for first frame).
        alpha: Blending factor (0=all previous, 1=all current, default 0.3).

    Returns:
        Filtered frame.
    """
    if prev_img is None or prev_img.shape != img.shape:
        return img

    result = alpha * img.astype(np.float32) + (1 - alpha) * prev_img.astype(np.float32)
    return result.astype(np.uint16)


def save_png(path: str, pixels: NDArray[np.uint16]) -> None:
    """Write a frame as a 16-bit grayscale PNG."""
    if not cv2.imwrite(path, np.ascontiguousarray(pixels, dtype=np.uint16)):
        raise OSError(f"Failed to write {path}")


# =============================================================================
# Capture
# =============================================================================


def capture(
    output: str,
    port: str | None = None,
    fps: float | None = None,
    timeout: float | None = None,
    frame_timeout: float = 10.0,
) -> NDArray[np.uint16]:
    """Grab one frame from the camera and save it as a 16-bit PNG.

    Returns:
        The captured pixels.
    """
    camera = open_camera(port, timeout=timeout)
    try:
        if fps is not None:
            actual = camera.set_frame_rate(fps)
            print(f"Frame rate: {actual:.2f} Hz")
        _, channel = camera.start_stream()
        try:
            frame = channel.get(timeout=frame_timeout)
        except ChannelClosed:
            raise MI48Error(f"Stream ended before a frame arrived: {channel.error}") from None
    finally:
        # Also stops the stream thread
        camera.disconnect()

    save_png(output, frame.pixels)
    print(f"Saved: {output} ({frame.width}x{frame.height})")
    return frame.pixels


# =============================================================================
# Viewer
# =============================================================================


class MI48Viewer:
    """MI48 Thermal Camera Viewer."""

    def __init__(
        self,
        port: str | None = None,
        fps: float | None = None,
        timeout: float | None = None,
        colormap: ColormapID | int = ColormapID.IRONBOW,
    ) -> None:
        """Initialize viewer.

        Args:
            port: Serial port of the camera (auto-detected when None).
            fps: Initial frame rate, or None to keep the camera's setting.
            timeout: Serial read timeout in seconds.
            colormap: Initial colormap.
        """
        self.port = port
        self.initial_fps = fps
        self.timeout = timeout
        self.camera: MI48Camera | None = None
        self.channel: FrameChannel | None = None
        self.rotation: int = 0
        self.colormap_idx: int = ColormapID(colormap)
        self.mirror: bool = False
        self.show_help: bool = False
        self.show_reticule: bool = True
        self.zoom: int = 6
        self.fps: float = 0.0
        self.enhanced: bool = True
        self.use_clahe: bool = True
        self.scale_mode: ScaleMode = ScaleMode.BICUBIC
        self.agc_mode: AGCMode = AGCMode.TEMPORAL_1
        self.dde_strength: float = 0.3
        self.tnr_alpha: float = 0.5
        self.divisor_idx: int = 0
        self._agc = TemporalAGC()
        self._fps_count: int = 0
        self._fps_time: float = time.time()
        self._clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        self._last_display: NDArray[np.uint8] | None = None
        self._prev_frame: NDArray[np.uint16] | None = None

    def run(self) -> None:
        """Main viewer loop."""
        self.camera = open_camera(self.port, timeout=self.timeout)
        cancel: Callable[[], None] | None = None
        try:
            identity = self.camera.identity
            if identity is None:
                raise RuntimeError("Camera not initialized")
            print(f"Device: {identity.model_name}, Firmware: {identity.firmware_version}")
            print(identity.serial_info)
            if self.initial_fps is not None:
                print(f"Frame rate: {self.camera.set_frame_rate(self.initial_fps):.2f} Hz")
            cancel, self.channel = self.camera.start_stream()
            print("Press 'h' for help")

            window_name = f"MI48 {identity.model_name}"
            cv2.namedWindow(window_name, cv2.WINDOW_NORMAL)

            while True:
                try:
                    frame = self.channel.get(timeout=FRAME_POLL_INTERVAL)
                except TimeoutError:
                    # Keep the window responsive while the stream stalls
                    if not self._handle_key(self._prev_frame):
                        break
                    continue
                except ChannelClosed:
                    if self.channel.error is not None:
                        print(f"Stream stopped: {self.channel.error}")
                    break

                thermal = tnr(frame.pixels, self._prev_frame, alpha=self.tnr_alpha)
                self._prev_frame = thermal.copy()

                self._last_display = self._render(thermal)
                cv2.imshow(window_name, self._last_display)
                self._update_fps()

                if not self._handle_key(thermal):
                    break
                if cv2.getWindowProperty(window_name, cv2.WND_PROP_VISIBLE) < 1:
                    break
        finally:
            if cancel is not None:
                cancel()
            self.camera.disconnect()
            cv2.destroyAllWindows()

    def _update_fps(self) -> None:
        self._fps_count += 1
        now = time.time()
        if now - self._fps_time >= 1.0:
            self.fps = self._fps_count / (now - self._fps_time)
            self._fps_count = 0
            self._fps_time = now

    def _render(self, thermal: NDArray[np.uint16]) -> NDArray[np.uint8]:
        """Render thermal frame to display image."""
        if self.agc_mode == AGCMode.MINMAX:
            img = agc_minmax(thermal)
        else:
            img = self._agc(thermal, pct=AGC_PERCENTILES[self.agc_mode])

        # Optional 2x upscaling
        if self.scale_mode != ScaleMode.OFF:
            h, w = img.shape[:2]
            resized: Any = cv2.resize(
                img, (w * 2, h * 2), interpolation=SCALE_INTERP[self.scale_mode]
            )
            # cv2.resize may return cv2.UMat on some platforms
            img = np.asarray(resized, dtype=np.uint8)

        if self.use_clahe:
            clahe_result: Any = self._clahe.apply(img)
            img = np.asarray(clahe_result, dtype=np.uint8)

        img = dde(img, strength=self.dde_strength)
        img = apply_colormap(img, self.colormap_idx)

        if self.mirror:
            img = cv2.flip(img, 1)

        if self.rotation == 90:
            img = cv2.rotate(img, cv2.ROTATE_90_CLOCKWISE)
        elif self.rotation == 180:
            img = cv2.rotate(img, cv2.ROTATE_180)
        elif self.rotation == 270:
            img = cv2.rotate(img, cv2.ROTATE_90_COUNTERCLOCKWISE)

        h, w = img.shape[:2]
        result = cast(
            NDArray[np.uint8],
            cv2.resize(
                img, (w * self.zoom, h * self.zoom), interpolation=cv2.INTER_LINEAR
            ),
        )
        self._draw_overlays(result, thermal)
        return result

    def _draw_overlays(self, img: NDArray[np.uint8], thermal: NDArray[np.uint16]) -> None:
        """Draw raw value overlays and UI elements."""
        h, w = img.shape[:2]
        th, tw = thermal.shape
        center = int(thermal[th // 2, tw // 2])

        cv2.putText(
            img,
            f"Center: {center} | Range: {int(thermal.min())}-{int(thermal.max())}",
            (10, 20),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.5,
            COLOR_TEXT,
            1,
            cv2.LINE_AA,
        )

        cmap_name = ColormapID(self.colormap_idx).name
        status = f"{self.fps:.1f} FPS | {cmap_name} | {self.agc_mode.name}"
        cv2.putText(
            img, status, (10, h - 10), cv2.FONT_HERSHEY_SIMPLEX, 0.5, COLOR_TEXT, 1, cv2.LINE_AA
        )

        if self.show_reticule:
            cx_d, cy_d = w // 2, h // 2
            cv2.line(img, (cx_d - 15, cy_d), (cx_d + 15, cy_d), COLOR_RETICULE, 1, cv2.LINE_AA)
            cv2.line(img, (cx_d, cy_d - 15), (cx_d, cy_d + 15), COLOR_RETICULE, 1, cv2.LINE_AA)

        if self.show_help:
            self._draw_help(img)

    def _draw_help(self, img: NDArray[np.uint8]) -> None:
        """Draw help overlay."""
        lines = [
            "q-Quit  h-help",
            "space-Shot  D-Dump",
            "+/- Zoom  r-Rotate  m-Mirror",
            "c-Colormap  a-AGC  f-Frame rate",
            "x-Scale  p-Enhanced  d-DDE",
            "t-Reticule",
        ]
        overlay = img.copy()
        cv2.rectangle(overlay, (5, 30), (260, 40 + 18 * len(lines)), (0, 0, 0), -1)
        cv2.addWeighted(overlay, 0.7, img, 0.3, 0, img)
        for i, line in enumerate(lines):
            cv2.putText(
                img,
                line,
                (10, 50 + i * 18),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.4,
                COLOR_TEXT,
                1,
                cv2.LINE_AA,
            )

    def _handle_key(self, thermal: NDArray[np.uint16] | None) -> bool:
        """Handle keyboard input. Returns False to quit."""
        key = cv2.waitKey(1) & 0xFF

        if key == 255:
            return True

        if key == ord("q"):
            return False

        if key == ord("r"):
            self.rotation = (self.rotation + 90) % 360
            print(f"Rotation: {self.rotation} deg")
        elif key == ord("c"):
            self.colormap_idx = (self.colormap_idx + 1) % len(ColormapID)
        elif key == ord("m"):
            self.mirror = not self.mirror
            print("Mirror:", "ON" if self.mirror else "OFF")
        elif key == ord("h"):
            self.show_help = not self.show_help
        elif key == ord("f"):
            self._cycle_frame_rate()
        elif key == ord("d"):
            self._toggle_dde()
        elif key == ord("D"):
            if thermal is None:
                print("No frame to dump")
            else:
                self._dump(thermal)
        elif key == ord(" "):
            self._screenshot()
        elif key in (ord("+"), ord("=")):
            self.zoom = min(10, self.zoom + 1)
        elif key in (ord("-"), ord("_")):
            self.zoom = max(1, self.zoom - 1)
        elif key == ord("x"):
            self.scale_mode = ScaleMode((self.scale_mode + 1) % len(ScaleMode))
            print(f"Scale: {self.scale_mode.name}")
        elif key == ord("p"):
            self._toggle_enhanced()
        elif key == ord("a"):
            self.agc_mode = AGCMode((self.agc_mode + 1) % len(AGCMode))
            self._agc.reset()
            print(f"AGC: {self.agc_mode.name}")
        elif key == ord("t"):
            self.show_reticule = not self.show_reticule

        return True

    def _cycle_frame_rate(self) -> None:
        """Step through the frame rate divisors while streaming."""
        if self.camera is None or self.camera.max_fps <= 0:
            print("Frame rate not adjustable for this camera")
            return
        self.divisor_idx = (self.divisor_idx + 1) % len(FRAME_RATE_DIVISORS)
        target = self.camera.max_fps / FRAME_RATE_DIVISORS[self.divisor_idx]
        try:
            actual = self.camera.set_frame_rate(target)
        except MI48Error as e:
            print("Frame rate change failed:", e)
            return
        print(f"Frame rate: {actual:.2f} Hz")

    def _toggle_enhanced(self) -> None:
        """Toggle enhanced processing mode (CLAHE + DDE)."""
        self.enhanced = not self.enhanced
        self.use_clahe = self.enhanced
        self.dde_strength = 0.3 if self.enhanced else 0.0
        print(f"Enhanced: {'ON' if self.enhanced else 'OFF'}")

    def _toggle_dde(self) -> None:
        """Toggle DDE (Digital Detail Enhancement)."""
        self.dde_strength = 0.0 if self.dde_strength > 0 else 0.3
        print(f"DDE: {'ON' if self.dde_strength > 0 else 'OFF'}")

    def _dump(self, thermal: NDArray[np.uint16]) -> None:
        """Dump raw thermal data to file."""
        ts = time.strftime("%H%M%S")
        th, tw = thermal.shape
        print(f"\n--- Dump {ts} ---")
        print(f"Shape: {thermal.shape}, Range: {thermal.min()}-{thermal.max()}")
        print(f"Center raw: {thermal[th // 2, tw // 2]}")
        np.save(f"mi48_raw_{ts}.npy", thermal)
        save_png(f"mi48_raw_{ts}.png", thermal)
        print(f"Saved: mi48_raw_{ts}.npy, mi48_raw_{ts}.png\n")

    def _screenshot(self) -> None:
        """Save screenshot."""
        if self._last_display is None:
            print("No frame to save")
            return
        ts = time.strftime("%Y%m%d_%H%M%S")
        filename = f"mi48_{ts}.png"
        cv2.imwrite(filename, self._last_display)
        print(f"Saved: {filename}")


def main() -> None:
    """Entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="MI48 USB thermal camera viewer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port",
        type=str,
        default=None,
        help="Serial port of the camera (default: auto-detect)",
    )
    parser.add_argument(
        "--fps",
        type=float,
        default=None,
        help="Frame rate in Hz (default: keep camera setting)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Serial read timeout in seconds (default: block)",
    )
    parser.add_argument(
        "--capture",
        metavar="FILE",
        type=str,
        default=None,
        help="Save one frame as a 16-bit PNG and exit",
    )
    parser.add_argument(
        "--colormap",
        type=str,
        choices=[c.name.lower() for c in ColormapID],
        default="ironbow",
        help="Initial colormap (default: ironbow)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log protocol traffic",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        if args.capture:
            capture(args.capture, port=args.port, fps=args.fps, timeout=args.timeout)
        else:
            MI48Viewer(
                port=args.port,
                fps=args.fps,
                timeout=args.timeout,
                colormap=ColormapID[args.colormap.upper()],
            ).run()
    except (MI48Error, TimeoutError) as e:
        print(f"Error: {e}")
    except KeyboardInterrupt:
        print("\nInterrupted")


if __name__ == "__main__":
    main()
