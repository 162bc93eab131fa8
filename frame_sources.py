"""
Frame sources and camera readiness.

A FrameSource hands out the most recent preview frame without blocking and
takes a one-shot high resolution capture on request. Readiness (permission
granted, device open) is reported separately so a host can revoke it while a
session runs.
"""

import logging
import platform
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Union

import cv2
import numpy as np
from PIL import Image

from errors import CaptureError
from models import Frame

logger = logging.getLogger(__name__)


class CameraReadiness(ABC):
    """Port: permission / lifecycle layer"""

    @abstractmethod
    def is_ready(self) -> bool:
        ...


class ReadinessFlag(CameraReadiness):
    """Readiness switched by the host, e.g. when camera permission changes"""

    def __init__(self, ready: bool = True):
        self._event = threading.Event()
        if ready:
            self._event.set()

    def grant(self) -> None:
        self._event.set()

    def revoke(self) -> None:
        logger.warning("Camera readiness revoked")
        self._event.clear()

    def is_ready(self) -> bool:
        return self._event.is_set()


class FrameSource(CameraReadiness):
    """Port: camera or any other producer of RGB frames"""

    @abstractmethod
    def next_frame(self) -> Optional[Frame]:
        """
        Most recent frame, or None if nothing is available yet. Never blocks.

        Raises:
            PermissionRevoked: camera access was withdrawn while streaming.
        """
        ...

    @abstractmethod
    def capture_high_res(self) -> np.ndarray:
        """
        One-shot capture used for extraction. May block.

        Raises:
            CaptureError: no image could be delivered.
        """
        ...

    def is_ready(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class OpenCVFrameSource(FrameSource):
    """
    Local webcam through cv2.VideoCapture.

    A reader thread keeps only the latest frame, so next_frame() never waits
    on the device. Frames are converted from BGR to RGB.
    """

    def __init__(
        self,
        camera_id: Any = 0,
        width: int = 1280,
        height: int = 720,
        mirror: bool = True,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            camera_id: Camera device index (int) or stream URL (str)
            width: Desired camera width
            height: Desired camera height
            mirror: Flip frames horizontally like a selfie preview
        """
        self.camera_id = camera_id
        self.frame_width = width
        self.frame_height = height
        self.mirror = mirror
        self.clock = clock

        self.cap = None
        self._latest: Optional[Frame] = None
        self._lock = threading.Lock()
        self._running = threading.Event()
        self._reader: Optional[threading.Thread] = None

    def open(self) -> bool:
        """Open the device and start the reader thread; returns False on failure."""
        # CAP_DSHOW on Windows, default backend on Mac/Linux
        if platform.system() == "Windows":
            self.cap = cv2.VideoCapture(self.camera_id, cv2.CAP_DSHOW)
        else:
            self.cap = cv2.VideoCapture(self.camera_id)

        if not self.cap.isOpened():
            logger.error(f"Failed to open camera {self.camera_id}")
            self.cap = None
            return False

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.frame_width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.frame_height)

        # Actual resolution may differ from the requested one
        self.frame_width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.frame_height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

        self._running.set()
        self._reader = threading.Thread(target=self._read_loop, name="Camera_Reader", daemon=True)
        self._reader.start()

        logger.info(f"Camera initialized: {self.frame_width}x{self.frame_height}")
        return True

    def _read_frame(self) -> Optional[np.ndarray]:
        ret, frame = self.cap.read()
        if not ret or frame is None:
            return None
        if self.mirror:
            frame = cv2.flip(frame, 1)
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def _read_loop(self) -> None:
        while self._running.is_set():
            rgb = self._read_frame()
            if rgb is None:
                logger.error("Failed to read frame from camera")
                self._running.clear()
                break
            with self._lock:
                self._latest = Frame(rgb, self.clock())

    def is_ready(self) -> bool:
        return self.cap is not None and self.cap.isOpened() and self._running.is_set()

    def next_frame(self) -> Optional[Frame]:
        with self._lock:
            return self._latest

    def capture_high_res(self) -> np.ndarray:
        frame = self.next_frame()
        if frame is None:
            raise CaptureError("No camera frame available for capture")
        return np.array(frame.data, copy=True)

    def close(self) -> None:
        self._running.clear()
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=1.0)
        self._reader = None
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        logger.info("Camera released")


class StillImageFrameSource(FrameSource):
    """Serves one still image as every preview frame and as the capture"""

    def __init__(
        self,
        image: Union[np.ndarray, Image.Image, str],
        clock: Callable[[], float] = time.monotonic
    ):
        if isinstance(image, str):
            image = Image.open(image)
        if isinstance(image, Image.Image):
            image = np.array(image.convert("RGB"))
        self.image = np.asarray(image)
        self.clock = clock

    def next_frame(self) -> Optional[Frame]:
        return Frame(self.image, self.clock())

    def capture_high_res(self) -> np.ndarray:
        if self.image.size == 0:
            raise CaptureError("Still image is empty")
        return np.array(self.image, copy=True)
