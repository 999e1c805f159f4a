from __future__ import annotations

import numpy as np


class FrameBuffers:
    """
    Two pre-allocated depth frames that alternate between the model (previous)
    and observation (current) roles.

    Roles are tracked with a single bit (`model_slot`); `swap()` flips it and
    never copies pixel data. Frames are overwritten in place by the frame source.
    """

    def __init__(self, height: int, width: int):
        self.slots = (
            np.zeros((height, width), dtype=np.uint16),
            np.zeros((height, width), dtype=np.uint16),
        )
        self.timestamps = [0, 0]
        self.model_slot = 0
        self.swaps = 0

    @property
    def shape(self) -> tuple[int, int]:
        return self.slots[0].shape

    @property
    def observation_slot(self) -> int:
        return 1 - self.model_slot

    @property
    def model(self) -> np.ndarray:
        return self.slots[self.model_slot]

    @property
    def observation(self) -> np.ndarray:
        return self.slots[self.observation_slot]

    @property
    def model_timestamp(self) -> int:
        return self.timestamps[self.model_slot]

    @property
    def observation_timestamp(self) -> int:
        return self.timestamps[self.observation_slot]

    def swap(self) -> None:
        self.model_slot = self.observation_slot
        self.swaps += 1
