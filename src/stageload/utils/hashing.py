"""
Deterministic content hashing.

Used to compare derived-table contents across transform runs and to
fingerprint staged files for load history.
"""

import hashlib

import pandas as pd


def hash_dataframe(df: pd.DataFrame, columns: list[str] | None = None) -> str:
    """
    Compute a deterministic hash of a DataFrame's shape, columns and values.

    Row order is part of the hash. The index is not.

    Args:
        df: DataFrame to hash.
        columns: Optional subset of columns to include.

    Returns:
        Hex digest string.
    """
    if columns:
        df = df[columns]

    hasher = hashlib.md5()
    hasher.update(f"{df.shape}".encode())
    hasher.update(",".join(map(str, df.columns)).encode())
    hasher.update(",".join(str(dtype) for dtype in df.dtypes).encode())
    if len(df) > 0:
        safe = df.copy()
        for col in safe.columns:
            # VARIANT values (dicts, lists) are unhashable
            if safe[col].dtype == object:
                safe[col] = safe[col].map(repr)
        hasher.update(pd.util.hash_pandas_object(safe, index=False).to_numpy().tobytes())
    return hasher.hexdigest()


def hash_bytes(data: bytes) -> str:
    """Return the MD5 hex digest of raw file contents."""
    return hashlib.md5(data).hexdigest()
