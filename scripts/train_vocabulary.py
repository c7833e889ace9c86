#!/usr/bin/env python3
"""Train a visual vocabulary for covislam place recognition.

This script trains a Bag of Visual Words vocabulary by:
1. Extracting ORB descriptors (with the session's extractor settings) from
   every image below a directory
2. Running mini-batch k-means to find the visual word centers
3. Weighting the words by inverse document frequency over the same images
4. Saving the vocabulary for SLAMSystem(..., vocabulary="vocabulary.npz")

Usage:
    python scripts/train_vocabulary.py --image-dir data/images
    python scripts/train_vocabulary.py --image-dir data/images --n-words 2000 --max-images 5000
    python scripts/train_vocabulary.py --image-dir data/images --settings settings.yaml

Requires the ``vocab`` extra (scikit-learn).
"""

import argparse
import sys
import time
from pathlib import Path

import cv2
import numpy as np
from sklearn.cluster import MiniBatchKMeans

from covislam.config import FeatureConfig, SLAMConfig
from covislam.frontend import FeatureDetector
from covislam.loop_closure import VisualVocabulary

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".pgm")


def collect_descriptors(
    image_dir: Path,
    features: FeatureConfig,
    max_images: int | None = None,
    skip_every: int = 1,
) -> list[np.ndarray]:
    """Extract ORB descriptors from the images below ``image_dir``.

    Args:
        image_dir: Directory searched recursively for images
        features: Extractor settings
        max_images: Maximum images to process (None for all)
        skip_every: Process every Nth image

    Returns:
        One descriptor array per image, each of shape (n, 32)
    """
    detector = FeatureDetector(features)
    image_paths = sorted(
        p for p in image_dir.rglob("*") if p.suffix.lower() in IMAGE_SUFFIXES
    )
    print(f"Found {len(image_paths)} images in {image_dir}")

    per_image: list[np.ndarray] = []
    for i, img_path in enumerate(image_paths[::skip_every]):
        if max_images and len(per_image) >= max_images:
            print(f"Reached max_images limit ({max_images})")
            break

        img = cv2.imread(str(img_path), cv2.IMREAD_GRAYSCALE)
        if img is None:
            continue

        detected = detector.detect(img)
        if len(detected) > 0:
            per_image.append(detected.descriptors)

        if (i + 1) % 500 == 0:
            print(f"  {i + 1} images processed")

    print(f"\nCollected descriptors from {len(per_image)} images")
    if not per_image:
        raise ValueError(f"No descriptors found in {image_dir}")
    return per_image


def train_words(
    descriptors: np.ndarray,
    n_words: int,
    batch_size: int = 10000,
    max_iter: int = 100,
) -> np.ndarray:
    """Cluster descriptors into visual words.

    Returns:
        Cluster centers (visual words), shape (n_words, 32)
    """
    print(f"\nTraining vocabulary with {n_words} words...")
    print(f"  Descriptors: {len(descriptors)}")
    print(f"  Batch size: {batch_size}")
    print(f"  Max iterations: {max_iter}")

    start_time = time.time()
    kmeans = MiniBatchKMeans(
        n_clusters=n_words,
        random_state=42,
        batch_size=batch_size,
        n_init="auto",
        max_iter=max_iter,
        verbose=1,
    )
    kmeans.fit(descriptors.astype(np.float32))

    elapsed = time.time() - start_time
    print(f"\nTraining complete in {elapsed:.1f}s")
    print(f"  Inertia: {kmeans.inertia_:.2e}")
    print(f"  Iterations: {kmeans.n_iter_}")

    return kmeans.cluster_centers_.astype(np.float32)


def document_frequencies(vocabulary: VisualVocabulary, per_image: list[np.ndarray]) -> np.ndarray:
    """Count, for every word, the images containing it."""
    counts = np.zeros(vocabulary.n_words, dtype=np.int64)
    for descriptors in per_image:
        counts[np.unique(vocabulary.assign(descriptors))] += 1
    return counts


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train visual vocabulary for place recognition",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--image-dir",
        type=Path,
        required=True,
        help="Directory searched recursively for training images",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/vocabulary.npz"),
        help="Output vocabulary file (default: data/vocabulary.npz)",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="YAML settings file whose 'features' section configures ORB",
    )
    parser.add_argument(
        "--n-words",
        type=int,
        default=1000,
        help="Number of visual words (default: 1000)",
    )
    parser.add_argument(
        "--max-images",
        type=int,
        default=None,
        help="Max images to process (default: all)",
    )
    parser.add_argument(
        "--skip-every",
        type=int,
        default=3,
        help="Process every Nth image (default: 3 for speed)",
    )
    args = parser.parse_args()

    if not args.image_dir.exists():
        print(f"Error: Image directory not found: {args.image_dir}")
        sys.exit(1)

    features = SLAMConfig.from_yaml(args.settings).features if args.settings else FeatureConfig()

    print("=" * 60)
    print("Visual Vocabulary Training")
    print("=" * 60)
    print(f"Image directory: {args.image_dir}")
    print(f"Output file: {args.output}")
    print(f"Visual words: {args.n_words}")
    print(f"Features/image: {features.n_features}")
    print(f"Skip every: {args.skip_every}")
    if args.max_images:
        print(f"Max images: {args.max_images}")
    print()

    per_image = collect_descriptors(
        args.image_dir,
        features,
        max_images=args.max_images,
        skip_every=args.skip_every,
    )
    words = train_words(np.vstack(per_image), args.n_words)

    vocabulary = VisualVocabulary.from_words(words)
    vocabulary = vocabulary.with_idf(document_frequencies(vocabulary, per_image), len(per_image))
    vocabulary.save(args.output)

    print()
    print("=" * 60)
    print(f"Vocabulary saved to: {args.output}")
    print(f"  Words: {vocabulary.n_words}")
    print(f"  Documents: {len(per_image)}")
    print("=" * 60)


if __name__ == "__main__":
    main()
