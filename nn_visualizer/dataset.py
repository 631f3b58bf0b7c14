"""
dataset.py
~~~~~~~~~~

Labelled sample images and navigation over them.

Images are kept the way they ship: one flat byte buffer of stacked
fixed-size images plus a parallel sequence of integer labels. Indices wrap
around the set in both directions, so stepping before the first sample
lands on the last one.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from nn_visualizer.inputs import MAX_INTENSITY, dataset_sample
from nn_visualizer.network import NetworkDescriptor, predict

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_WIDTH = 28 * 28


def _check_range(values: np.ndarray, upper: float, kind: str) -> None:
    if values.size and not (values.min() >= 0 and values.max() <= upper):
        raise ValueError(
            f"{kind} must lie in 0-{upper:g}, got range "
            f"[{values.min()}, {values.max()}]"
        )


def _as_bytes(values: np.ndarray) -> np.ndarray:
    """Cast pixel values to uint8, refusing anything that would wrap."""
    values = np.asarray(values)
    if values.dtype != np.uint8:
        _check_range(values, MAX_INTENSITY, "pixel intensities")
    return values.astype(np.uint8).reshape(-1)


def pack_images(images: np.ndarray) -> np.ndarray:
    """
    Flatten a stack of images into one uint8 buffer.

    Float images are taken to be in [0, 1] and scaled to 0-255; integer
    images must already be in 0-255.

    Raises:
        ValueError: If a value lies outside its range
    """
    images = np.asarray(images)
    if np.issubdtype(images.dtype, np.floating):
        _check_range(images, 1.0, "float images")
        images = np.rint(images * MAX_INTENSITY)
    return _as_bytes(images)


class SampleSet:
    """Stacked 8-bit images with one label each."""

    def __init__(self, data, labels: Sequence[int],
                 width: int = DEFAULT_IMAGE_WIDTH):
        if isinstance(data, (bytes, bytearray, memoryview)):
            data = np.frombuffer(data, dtype=np.uint8)
        self.data = _as_bytes(data)
        self.labels = np.asarray(labels, dtype=np.int64).reshape(-1)
        self.width = int(width)

        if self.width < 1:
            raise ValueError(f"image width must be positive, got {width}")
        if self.labels.size == 0:
            raise ValueError("sample set is empty")
        if self.data.size != self.labels.size * self.width:
            raise ValueError(
                f"{self.labels.size} labels need {self.labels.size * self.width} "
                f"bytes of image data, got {self.data.size}"
            )

    @classmethod
    def from_npz(cls, path: str) -> 'SampleSet':
        """
        Load samples from an ``.npz`` archive.

        The archive holds ``data`` (stacked images), ``labels`` and
        optionally ``width``; without it 28x28 images are assumed.
        """
        with np.load(path) as archive:
            width = int(archive['width']) if 'width' in archive.files \
                else DEFAULT_IMAGE_WIDTH
            samples = cls(pack_images(archive['data']), archive['labels'], width)
        logger.info(f"Loaded {len(samples)} samples from {path}")
        return samples

    def __len__(self) -> int:
        return int(self.labels.size)

    def wrap_index(self, index: int) -> int:
        return index % len(self)

    def next_index(self, index: int) -> int:
        return self.wrap_index(index + 1)

    def previous_index(self, index: int) -> int:
        return self.wrap_index(index - 1)

    def sample(self, index: int) -> np.ndarray:
        """Normalized input vector for sample ``index`` (wrapped)."""
        return dataset_sample(self.data, self.wrap_index(index), self.width)

    def label(self, index: int) -> int:
        return int(self.labels[self.wrap_index(index)])

    def predict(self, net: NetworkDescriptor,
                index: int) -> Tuple[np.ndarray, int]:
        return predict(self.sample(index), net)

    def is_misclassified(self, net: NetworkDescriptor, index: int) -> bool:
        _, predicted = self.predict(net, index)
        return predicted != self.label(index)

    def next_misclassified(self, net: NetworkDescriptor,
                           index: int) -> Optional[int]:
        """
        First sample after ``index`` that ``net`` gets wrong.

        The search wraps and covers every sample once, ``index`` itself
        last. Returns None when the network classifies all of them
        correctly.
        """
        candidate = self.wrap_index(index)
        for _ in range(len(self)):
            candidate = self.next_index(candidate)
            if self.is_misclassified(net, candidate):
                return candidate
        logger.info("No misclassified sample found")
        return None

    def evaluate(self, net: NetworkDescriptor) -> int:
        """Number of samples classified correctly."""
        return sum(
            1 for index in range(len(self))
            if not self.is_misclassified(net, index)
        )

    def accuracy(self, net: NetworkDescriptor) -> float:
        return self.evaluate(net) / len(self)
