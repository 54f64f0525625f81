"""
Plain-text descriptor interchange.

Format:
    <count> <dimension>
    then per descriptor:
    <y> <x> <scale> <orientation>
    <dimension> integers in [0, 255], 20 per line

Components are stored as round(v * 255). Loading renormalizes every vector
to unit length.
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np

from sfm_recon.features.scale_space import Descriptor

VALUES_PER_LINE = 20


def save_descriptors_text(path: str, descriptors: Sequence[Descriptor]) -> None:
    """
    Write descriptors in the text format.

    Raises:
        ValueError: If descriptors differ in length or have negative
            components (signed SURF vectors cannot be represented).
    """
    dim = len(descriptors[0].data) if len(descriptors) > 0 else 0
    lines = [f"{len(descriptors)} {dim}"]
    for d in descriptors:
        data = np.asarray(d.data, dtype=np.float64).ravel()
        if len(data) != dim:
            raise ValueError(f"Descriptor length {len(data)} differs from {dim}")
        if np.any(data < 0.0):
            raise ValueError("Descriptors with negative components cannot be saved as text")

        values = np.clip(np.round(data * 255.0), 0, 255).astype(int)
        lines.append(f"{d.y:.6f} {d.x:.6f} {d.scale:.6f} {d.orientation:.6f}")
        for start in range(0, dim, VALUES_PER_LINE):
            lines.append(" ".join(str(v) for v in values[start:start + VALUES_PER_LINE]))

    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


def load_descriptors_text(path: str) -> List[Descriptor]:
    """
    Read descriptors written by `save_descriptors_text` (or any file in the
    same whitespace-separated format).

    Raises:
        ValueError: On a truncated or malformed file.
    """
    with open(path, "r") as f:
        tokens = f.read().split()
    if len(tokens) < 2:
        raise ValueError(f"Missing descriptor header in {path}")

    count = int(tokens[0])
    dim = int(tokens[1])
    if count < 0 or dim < 0:
        raise ValueError(f"Invalid descriptor header: {count} {dim}")
    record = 4 + dim
    if len(tokens) < 2 + count * record:
        raise ValueError(f"Expected {count} descriptors of dimension {dim} in {path}")

    descriptors: List[Descriptor] = []
    pos = 2
    for _ in range(count):
        y, x, scale, orientation = (float(v) for v in tokens[pos:pos + 4])
        data = np.array(tokens[pos + 4:pos + record], dtype=np.float32) / 255.0
        norm = float(np.linalg.norm(data))
        if norm > 0.0:
            data = data / norm
        descriptors.append(
            Descriptor(x=x, y=y, scale=scale, orientation=orientation, data=data.astype(np.float32))
        )
        pos += record

    return descriptors


__all__ = ["save_descriptors_text", "load_descriptors_text"]
