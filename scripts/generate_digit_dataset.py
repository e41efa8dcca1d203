#!/usr/bin/env python3
"""
Generate a synthetic digit dataset in NPZ format.

Renders digits with SyntheticDigitSource and stores them so training
and evaluation can run on a fixed dataset (see NpzDigitSource) instead
of images generated on the fly.

Usage:
    python scripts/generate_digit_dataset.py [--train N] [--test N] [--seed S]

The script will:
1. Render the training and test images
2. Save them as data/digits.npz
3. Create a backup of an existing dataset file
4. Verify the written file can be read back
"""

import argparse
import os
import shutil
import sys
from typing import Dict

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from digitcnn.digits import NpzDigitSource, SyntheticDigitSource
from digitcnn.training import TEST_NOISE, TRAIN_NOISE


def generate_split(source: SyntheticDigitSource, count: int,
                   noise: float, name: str) -> Dict[str, np.ndarray]:
    """
    Render `count` images cycling through the digits 0..9.

    Images are stored as uint8 (0-255) to keep the file small.
    """
    print(f"🎨 Rendering {count} {name} images (noise {noise})...")
    images, labels = source.generate_batch(count, noise)
    pixels = np.round(images[:, 0] * 255).astype(np.uint8)
    print(f"✅ Rendered {name}: {pixels.shape}")
    return {f'{name}_images': pixels, f'{name}_labels': labels.astype(np.uint8)}


def verify_dataset(filepath: str, arrays: Dict[str, np.ndarray]) -> bool:
    """Check that the file round-trips and loads as a digit source."""
    print(f"\n🔍 Verifying dataset...")

    with np.load(filepath) as data:
        for key, expected in arrays.items():
            assert np.array_equal(data[key], expected), f"{key} doesn't match!"

    for split in ('train', 'test'):
        source = NpzDigitSource(filepath, split=split)
        counts = np.bincount(source.labels, minlength=10)
        assert (counts > 0).all(), f"{split} split is missing digits: {counts}"

    print("✅ Verification passed! Every digit is present in both splits.")
    return True


def create_backup(filepath: str) -> str:
    backup_path = filepath + '.backup'
    print(f"\n💼 Creating backup: {backup_path}")
    shutil.copy2(filepath, backup_path)
    print(f"✅ Backup created")
    return backup_path


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('--train', type=int, default=6000,
                        help='number of training images')
    parser.add_argument('--test', type=int, default=1000,
                        help='number of test images')
    parser.add_argument('--size', type=int, default=32,
                        help='side of the square images')
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--output', default=None,
                        help='output path (default: data/digits.npz)')
    args = parser.parse_args()

    print("=" * 60)
    print("Synthetic Digit Dataset Generator")
    print("=" * 60)

    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    npz_path = args.output or os.path.join(project_root, 'data', 'digits.npz')

    if args.train < 10 or args.test < 10:
        print("❌ Error: each split needs at least 10 images (one per digit)")
        sys.exit(1)

    backup_path = None
    try:
        os.makedirs(os.path.dirname(os.path.abspath(npz_path)), exist_ok=True)
        if os.path.exists(npz_path):
            backup_path = create_backup(npz_path)

        source = SyntheticDigitSource(image_size=args.size, seed=args.seed)
        arrays = {}
        arrays.update(generate_split(source, args.train, TRAIN_NOISE, 'train'))
        arrays.update(generate_split(source, args.test, TEST_NOISE, 'test'))

        print(f"\n💾 Saving: {npz_path}")
        np.savez_compressed(npz_path, **arrays)
        npz_size = os.path.getsize(npz_path) / (1024 * 1024)
        print(f"✅ Saved successfully (size: {npz_size:.2f} MB)")

        verify_dataset(npz_path, arrays)

        print("\n" + "=" * 60)
        print("✅ DATASET COMPLETE!")
        print("=" * 60)
        print(f"\n📁 Dataset: {npz_path}")
        if backup_path:
            print(f"💡 To rollback: mv {backup_path} {npz_path}")

    except Exception as e:
        print(f"\n❌ Error generating dataset: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
