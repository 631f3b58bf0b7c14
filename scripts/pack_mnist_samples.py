#!/usr/bin/env python3
"""
Pack MNIST images into the sample format served by the visualizer.

Reads an ``mnist.npz`` archive (``test_images`` / ``test_labels`` keys,
images as floats in [0, 1] or as 0-255 bytes) and writes ``samples.npz``
with one flat uint8 buffer of stacked images plus the parallel labels.

Usage:
    python scripts/pack_mnist_samples.py [--split test] [--limit 1000]

The script will:
1. Load the chosen split from data/mnist.npz
2. Flatten the images into 8-bit stacked form
3. Save data/samples.npz
4. Verify the packed file reads back identically
"""

import os
import sys
import argparse
from typing import Optional, Tuple

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from nn_visualizer.dataset import DEFAULT_IMAGE_WIDTH, SampleSet, pack_images


def load_split(filepath: str, split: str,
               limit: Optional[int]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load one split of the MNIST archive.

    Parameters:
    -----------
    filepath : str
        Path to the mnist.npz file
    split : str
        ``train``, ``val`` or ``test``
    limit : int or None
        Keep only the first ``limit`` images

    Returns:
    --------
    tuple
        (images, labels)
    """
    print(f"📂 Loading '{split}' split from: {filepath}")

    with np.load(filepath) as data:
        images = data[f'{split}_images']
        labels = data[f'{split}_labels']

    if limit is not None:
        images, labels = images[:limit], labels[:limit]

    print(f"✅ Loaded {len(labels)} images")
    return images, labels


def save_samples(images: np.ndarray, labels: np.ndarray, filepath: str) -> None:
    """
    Save images and labels in the stacked sample format.

    Parameters:
    -----------
    images : np.ndarray
        Images, one per label
    labels : np.ndarray
        Class label of each image
    filepath : str
        Output path for the .npz file
    """
    print(f"\n💾 Packing samples: {filepath}")

    np.savez_compressed(
        filepath,
        data=pack_images(images),
        labels=np.asarray(labels, dtype=np.int64),
        width=np.int64(DEFAULT_IMAGE_WIDTH)
    )

    size = os.path.getsize(filepath) / (1024 * 1024)  # MB
    print(f"✅ Saved successfully (size: {size:.2f} MB)")


def verify_samples(filepath: str, images: np.ndarray, labels: np.ndarray) -> bool:
    """
    Verify that the packed file holds the same images and labels.

    Returns:
    --------
    bool
        True if verification passes
    """
    print(f"\n🔍 Verifying packed samples...")

    samples = SampleSet.from_npz(filepath)
    assert len(samples) == len(labels), "Sample count doesn't match!"
    assert np.array_equal(samples.labels, labels), "Labels don't match!"
    assert np.array_equal(samples.data, pack_images(images)), \
        "Images don't match!"

    print("✅ Verification passed! Data is identical.")
    return True


def main():
    """Main packing function."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('--split', default='test',
                        choices=('train', 'val', 'test'))
    parser.add_argument('--limit', type=int, default=None)
    args = parser.parse_args()

    print("=" * 60)
    print("MNIST Sample Packer")
    print("=" * 60)

    script_dir = os.path.dirname(os.path.abspath(__file__))
    data_dir = os.path.join(os.path.dirname(script_dir), 'data')

    mnist_path = os.path.join(data_dir, 'mnist.npz')
    samples_path = os.path.join(data_dir, 'samples.npz')

    if not os.path.exists(mnist_path):
        print(f"❌ Error: MNIST archive not found: {mnist_path}")
        sys.exit(1)

    try:
        images, labels = load_split(mnist_path, args.split, args.limit)
        save_samples(images, labels, samples_path)
        verify_samples(samples_path, images, labels)

        print("\n" + "=" * 60)
        print("✅ PACKING COMPLETE!")
        print("=" * 60)
        print(f"\n📁 Samples file: {samples_path}")
        print(f"💡 Point NN_SAMPLES_PATH at it to use another location")

    except (KeyError, ValueError, AssertionError) as e:
        print(f"\n❌ Error during packing: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
