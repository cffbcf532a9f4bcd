"""
Batch feature extraction for a directory of catalogue images.

Builds a reusable corpus index so that a query can be matched without
decoding every catalogue image again:
    - features.npy — (N, 114) float32 feature vectors
    - filenames.npy — maps index positions to image files
    - weighted_cosine.index — FAISS inner-product index over weighted,
      L2-normalized vectors (inner product == weighted cosine similarity)
    - index_info.json — source directory and counts

The FAISS index is only used to shortlist candidates; shortlisted vectors
are re-scored with the full similarity metric.
"""

import os
import json
import logging
from typing import List, Optional, Tuple

import faiss
import numpy as np

from .features import extract_features
from .preprocessing import load_image
from .scoring import feature_weights

logger = logging.getLogger(__name__)

# Threshold for switching from exact to approximate FAISS index
IVF_THRESHOLD = 1000

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.webp'}

FEATURES_FILE = "features.npy"
FILENAMES_FILE = "filenames.npy"
FAISS_FILE = "weighted_cosine.index"
INFO_FILE = "index_info.json"


def weighted_unit_vectors(vectors: np.ndarray) -> np.ndarray:
    """Apply feature weights and L2-normalize each row, as float32."""
    vectors = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    weighted = vectors * feature_weights(vectors.shape[1]).astype(np.float32)
    norms = np.linalg.norm(weighted, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return np.ascontiguousarray(weighted / norms, dtype=np.float32)


def _build_faiss_index(unit_vectors: np.ndarray) -> faiss.Index:
    dim = unit_vectors.shape[1]
    if unit_vectors.shape[0] >= IVF_THRESHOLD:
        nlist = max(100, int(np.sqrt(unit_vectors.shape[0])))
        quantizer = faiss.IndexFlatIP(dim)
        index = faiss.IndexIVFFlat(quantizer, dim, nlist, faiss.METRIC_INNER_PRODUCT)
        index.train(unit_vectors)
        index.add(unit_vectors)
        logger.info(f"Built IVFFlat index: {nlist} clusters, {dim}d vectors")
    else:
        index = faiss.IndexFlatIP(dim)
        index.add(unit_vectors)
        logger.info(f"Built FlatIP index: {dim}d vectors")
    return index


def build_index(image_dir: str,
                output_dir: str,
                metadata_path: Optional[str] = None) -> dict:
    """
    Extract features for every image in a directory and save a corpus index.

    Args:
        image_dir: Directory containing catalogue images.
        output_dir: Directory to write index files.
        metadata_path: Optional JSON list with a 'filename' field per entry.
            If not provided, image_dir is scanned.

    Returns:
        Dict with 'success', 'processed', 'errors', 'dimensions' counts.
    """
    os.makedirs(output_dir, exist_ok=True)

    if metadata_path and os.path.exists(metadata_path):
        with open(metadata_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
        filenames = [e.get('filename') for e in metadata if e.get('filename')]
    else:
        filenames = sorted(
            f for f in os.listdir(image_dir)
            if os.path.splitext(f)[1].lower() in IMAGE_EXTENSIONS
        )

    vectors = []
    valid_filenames = []
    errors = 0

    logger.info(f"Building index from {len(filenames)} images in {image_dir}")

    for i, filename in enumerate(filenames):
        filepath = os.path.join(image_dir, filename)
        if not os.path.exists(filepath):
            continue

        try:
            vectors.append(extract_features(load_image(filepath)))
            valid_filenames.append(filename)
        except Exception as e:
            logger.warning(f"Failed to process {filename}: {e}")
            errors += 1

        if (i + 1) % 500 == 0:
            logger.info(f"Processed {i + 1}/{len(filenames)} images")

    if not vectors:
        return {"success": False, "error": "No valid images processed", "errors": errors}

    feature_array = np.vstack(vectors).astype(np.float32)
    index = _build_faiss_index(weighted_unit_vectors(feature_array))

    np.save(os.path.join(output_dir, FEATURES_FILE), feature_array)
    np.save(os.path.join(output_dir, FILENAMES_FILE), np.array(valid_filenames))
    faiss_path = os.path.join(output_dir, FAISS_FILE)
    faiss.write_index(index, faiss_path)
    with open(os.path.join(output_dir, INFO_FILE), 'w', encoding='utf-8') as f:
        json.dump({
            "image_dir": os.path.abspath(image_dir),
            "count": len(valid_filenames),
            "dimensions": int(feature_array.shape[1]),
        }, f, indent=2)

    logger.info(f"Index built: {len(valid_filenames)} images, {errors} errors")

    return {
        "success": True,
        "processed": len(valid_filenames),
        "errors": errors,
        "dimensions": int(feature_array.shape[1]),
        "index_path": faiss_path,
    }


class CorpusIndex:
    """
    A loaded corpus index: filenames, raw vectors and the FAISS shortlist index.
    """

    def __init__(self,
                 filenames: List[str],
                 vectors: np.ndarray,
                 faiss_index: faiss.Index,
                 image_dir: str = "",
                 nprobe: int = 20):
        if len(filenames) != vectors.shape[0] or vectors.shape[0] != faiss_index.ntotal:
            raise ValueError(
                f"Index size mismatch: {len(filenames)} filenames, "
                f"{vectors.shape[0]} vectors, {faiss_index.ntotal} indexed"
            )
        self.filenames = list(filenames)
        self.vectors = vectors
        self.faiss_index = faiss_index
        self.image_dir = image_dir
        if hasattr(self.faiss_index, 'nprobe'):
            self.faiss_index.nprobe = nprobe

    @classmethod
    def load(cls, index_dir: str, nprobe: int = 20) -> "CorpusIndex":
        faiss_index = faiss.read_index(os.path.join(index_dir, FAISS_FILE))
        vectors = np.load(os.path.join(index_dir, FEATURES_FILE)).astype(np.float32)
        filenames = [str(f) for f in np.load(os.path.join(index_dir, FILENAMES_FILE))]

        image_dir = ""
        info_path = os.path.join(index_dir, INFO_FILE)
        if os.path.exists(info_path):
            with open(info_path, 'r', encoding='utf-8') as f:
                image_dir = json.load(f).get("image_dir", "")

        logger.info(f"Loaded corpus index: {faiss_index.ntotal} vectors, {faiss_index.d}d")
        return cls(filenames, vectors, faiss_index, image_dir=image_dir, nprobe=nprobe)

    def __len__(self) -> int:
        return len(self.filenames)

    def path_for(self, position: int) -> str:
        return os.path.join(self.image_dir, self.filenames[position])

    def shortlist(self, vector: np.ndarray, k: int) -> List[Tuple[int, float]]:
        """
        Positions of the k entries with the highest weighted cosine similarity.

        Raises:
            ValueError: If the vector length doesn't match the index.
        """
        query = weighted_unit_vectors(vector)
        if query.shape[1] != self.faiss_index.d:
            raise ValueError(
                f"Query dimension {query.shape[1]} doesn't match "
                f"index dimension {self.faiss_index.d}"
            )

        k = min(k, self.faiss_index.ntotal)
        if k <= 0:
            return []
        similarities, positions = self.faiss_index.search(query, k)
        return [(int(p), float(s)) for p, s in zip(positions[0], similarities[0]) if p >= 0]
