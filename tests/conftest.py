import threading
import time
from typing import Any, List, Optional, Sequence, Union

import numpy as np
import pytest

from errors import CaptureError, PermissionRevoked
from frame_sources import FrameSource
from models import Frame
from recognition import RecognitionBackend, RecognitionOutput

DRIVERS_LICENSE_TEXT = (
    "DRIVER LICENSE\n"
    "First Name: JOHN Last Name: DOE\n"
    "DOB: 01/02/1990\n"
)


def document_frame(width: int = 1280, height: int = 720) -> np.ndarray:
    """Dark background with a centered, striped (text-like) card covering 60% x 40%"""
    image = np.full((height, width, 3), 40, dtype=np.uint8)
    x0, x1 = int(width * 0.2), int(width * 0.8)
    y0, y1 = int(height * 0.3), int(height * 0.7)
    rows = np.arange(y0, y1)
    stripes = np.where((rows // 4) % 2 == 0, 255, 0).astype(np.uint8)
    image[y0:y1, x0:x1] = stripes[:, None, None]
    return image


def gray_frame(width: int = 1280, height: int = 720, value: int = 128) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend(RecognitionBackend):
    """
    Returns scripted outputs in order, repeating the last one. An Exception
    instance in the script is raised instead of returned.
    """

    def __init__(
        self,
        outputs: Sequence[Union[RecognitionOutput, Exception]] = (),
        gate: Optional[threading.Event] = None
    ):
        self.outputs = list(outputs) or [RecognitionOutput(DRIVERS_LICENSE_TEXT, 0.8)]
        self.gate = gate
        self.images: List[np.ndarray] = []
        self.started = threading.Event()

    def recognize(self, image: np.ndarray) -> RecognitionOutput:
        self.images.append(image)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        index = min(len(self.images), len(self.outputs)) - 1
        output = self.outputs[index]
        if isinstance(output, Exception):
            raise output
        return output

    @property
    def calls(self) -> int:
        return len(self.images)


class ScriptedFrameSource(FrameSource):
    """
    Serves the same preview frame forever. Readiness, revocation, frame latency
    and the captured image can be scripted.
    """

    def __init__(
        self,
        image: np.ndarray,
        capture_fails: bool = False,
        frame_delay: float = 0.0,
        capture_image: Any = None
    ):
        self.image = image
        self.ready = True
        self.revoked = False
        self.capture_fails = capture_fails
        self.frame_delay = frame_delay
        self.capture_image = capture_image
        self.captures = 0
        self.frames_served = 0

    def next_frame(self) -> Optional[Frame]:
        self.frames_served += 1
        if self.revoked:
            raise PermissionRevoked("camera access withdrawn")
        if self.frame_delay:
            time.sleep(self.frame_delay)
        return Frame(self.image)

    def capture_high_res(self) -> Any:
        self.captures += 1
        if self.capture_fails:
            raise CaptureError("camera busy")
        if self.capture_image is not None:
            return self.capture_image
        return self.image.copy()

    def is_ready(self) -> bool:
        return self.ready


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def document_image():
    return document_frame()


@pytest.fixture
def fake_backend():
    return FakeBackend()
