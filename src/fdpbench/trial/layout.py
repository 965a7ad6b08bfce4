"""Placement-stream directory layout on the trial volume."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

logger = logging.getLogger(__name__)

STREAM_DIRS = tuple(f"p{index}" for index in range(8))

# tier -> (stream directory, leaf directory), hottest first
TIER_MAP: Dict[str, tuple[str, str]] = {
    "wal": ("p0", "wal"),
    "flush": ("p1", "sst_flush"),
    "l0cmp": ("p2", "sst_l0cmp"),
    "midcmp": ("p3", "sst_midcmp"),
    "chaindata": ("p4", "chaindata"),
    "ancient": ("p5", "ancient"),
    "cl_hot": ("p6", "cl_hot"),
    "cl_cold": ("p7", "cl_cold"),
}


@dataclass(frozen=True)
class StorageLayout:
    """Directories each storage tier lands in for a given stream count.

    With a single stream every tier collapses onto ``p0``.
    """

    mount_point: Path
    streams: int

    def _stream_for(self, tier: str) -> str:
        stream, _ = TIER_MAP[tier]
        return stream if self.streams > 1 else "p0"

    def tier_dir(self, tier: str) -> Path:
        _, leaf = TIER_MAP[tier]
        return self.mount_point / self._stream_for(tier) / leaf

    @property
    def meta_root(self) -> Path:
        return self.mount_point / self._stream_for("chaindata")

    @property
    def data_root(self) -> Path:
        return self.meta_root / "gethdata"

    @property
    def logs_dir(self) -> Path:
        return self.meta_root / "logs"

    @property
    def validator_dir(self) -> Path:
        return self.meta_root / "cl_vc"

    @property
    def jwt_secret(self) -> Path:
        return self.meta_root / "jwt.hex"

    def sui_store_path(self) -> Path:
        if self.streams > 1:
            return self.mount_point / "p1" / "aaaaaaaaaaaa" / "sui_bench"
        return self.mount_point / "p7" / "bbbbbbbbbbbb" / "sui_bench"

    def all_dirs(self) -> List[Path]:
        dirs = [self.tier_dir(tier) for tier in TIER_MAP]
        dirs.extend([self.data_root, self.logs_dir, self.validator_dir])
        return dirs

    def create(self) -> None:
        for path in self.all_dirs():
            path.mkdir(parents=True, exist_ok=True)
        internal = self.data_root / "geth"
        internal.mkdir(parents=True, exist_ok=True)
        link = internal / "chaindata"
        if not link.exists() and not link.is_symlink():
            link.symlink_to(self.tier_dir("chaindata"))
            logger.debug("Symlinked %s -> %s", link, self.tier_dir("chaindata"))
        elif not link.is_symlink():
            logger.warning("%s exists as a real directory; chaindata placement not enforced", link)

    def geth_env(self, *, no_compression: bool, memtable_mb: int) -> Dict[str, str]:
        env = {
            "GETH_PEBBLE_NO_COMPRESSION": "1" if no_compression else "0",
            "GETH_PEBBLE_MEMTABLE_MB": str(memtable_mb),
        }
        if self.streams > 1:
            env.update(
                {
                    "GETH_FDP_ENABLED": "1",
                    "GETH_FDP_WAL_DIR": str(self.tier_dir("wal")),
                    "GETH_FDP_FLUSH_DIR": str(self.tier_dir("flush")),
                    "GETH_FDP_L0CMP_DIR": str(self.tier_dir("l0cmp")),
                    "GETH_FDP_MIDCMP_DIR": str(self.tier_dir("midcmp")),
                }
            )
        else:
            env["GETH_FDP_ENABLED"] = "0"
        return env

    def sui_env(self) -> Dict[str, str]:
        if self.streams > 1:
            return {
                "SUI_FDP_WAL_SEMANTIC": "1",
                "SUI_FDP_BASE_PATH": str(self.mount_point),
                "SUI_FDP_HOT_SIZE_MB": "64",
            }
        return {}

    def stream_usage(self) -> Dict[str, int]:
        """Bytes used under each ``pN`` directory that exists."""
        usage: Dict[str, int] = {}
        for stream in STREAM_DIRS:
            root = self.mount_point / stream
            if root.is_dir():
                usage[stream] = _tree_size(root)
        return usage


# Placement variables that must never leak into a baseline trial's environment.
PLACEMENT_ENV_KEYS = (
    "GETH_FDP_ENABLED",
    "GETH_FDP_WAL_DIR",
    "GETH_FDP_FLUSH_DIR",
    "GETH_FDP_L0CMP_DIR",
    "GETH_FDP_MIDCMP_DIR",
    "SUI_FDP_WAL_SEMANTIC",
    "SUI_FDP_BASE_PATH",
    "SUI_FDP_HOT_SIZE_MB",
    "SUI_FDP_ENABLED",
    "SUI_FDP_SEMANTIC",
)


def process_env(overrides: Dict[str, str]) -> Dict[str, str]:
    """Current environment minus any inherited placement variables, plus ``overrides``."""
    env = {key: value for key, value in os.environ.items() if key not in PLACEMENT_ENV_KEYS}
    env.update(overrides)
    return env


def _tree_size(root: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def human_bytes(num_bytes: int) -> str:
    value = float(num_bytes)
    for suffix in ("B", "K", "M", "G", "T"):
        if value < 1024 or suffix == "T":
            return f"{value:.0f}{suffix}" if suffix == "B" else f"{value:.1f}{suffix}"
        value /= 1024
    return f"{num_bytes}B"
