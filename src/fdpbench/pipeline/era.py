"""geth/era2rlp wrappers for the era1 → RLP → chain import pipeline."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Mapping, Optional

from fdpbench.config import Settings
from fdpbench.trial.errors import EnvironmentCheckError, PipelineError
from fdpbench.trial.models import Chunk
from fdpbench.utils import CommandRunner, run_command, tail_file

logger = logging.getLogger(__name__)


class EraTools:
    def __init__(self, settings: Settings, runner: CommandRunner = run_command) -> None:
        self._settings = settings
        self._run = runner

    @property
    def era_dir(self) -> Path:
        return self._settings.era_dir

    def era_file_count(self) -> int:
        if not self.era_dir.is_dir():
            return 0
        return sum(1 for _ in self.era_dir.glob("*.era1"))

    def chunk_artifact(self, index: int, lo: int = 0, hi: int = 0) -> Path:
        return self.era_dir / f"chunk_{index}.rlp"

    def check_prerequisites(self, *, need_era_files: bool = True) -> None:
        """Fail fast on a missing binary or an empty era1 directory."""
        for label, binary in (("geth", self._settings.geth_bin), ("era2rlp", self._settings.era2rlp_bin)):
            if not binary.is_file():
                raise EnvironmentCheckError(f"{label} binary not found at {binary}")
        if need_era_files and not self._settings.fetch_on_demand and self.era_file_count() == 0:
            raise EnvironmentCheckError(
                f"No .era1 files found in {self.era_dir}; run `fdp-bench download` first"
            )

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------
    def download(self, first_block: int, last_block: int) -> int:
        """Download era1 archives covering ``first_block..last_block``; return the file count."""
        self.era_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Downloading Era1 files for blocks %d..%d", first_block, last_block)
        logger.info("  Server: %s", self._settings.era_server)
        logger.info("  Destination: %s", self.era_dir)
        log_path = self.era_dir / "download.log"
        cmd = [
            str(self._settings.geth_bin),
            "download-era",
            "--server",
            self._settings.era_server,
            "--block",
            f"{first_block}-{last_block}",
            "--datadir.era",
            str(self.era_dir),
        ]
        self._invoke(cmd, "download", log_path)
        count = self.era_file_count()
        logger.info("Downloaded %d era1 files to %s", count, self.era_dir)
        return count

    def fetch_chunk(self, chunk: Chunk) -> None:
        self.download(chunk.range_start, chunk.range_end)

    # ------------------------------------------------------------------
    # Transform
    # ------------------------------------------------------------------
    def convert(self, output: Path, max_block: int, min_block: Optional[int] = None) -> Path:
        cmd = [str(self._settings.era2rlp_bin), str(self.era_dir), str(output), str(max_block)]
        if min_block is not None:
            cmd.append(str(min_block))
        logger.info("  Converting era1 → RLP (min=%s max=%d)", min_block if min_block is not None else 0, max_block)
        self._invoke(cmd, "convert", self.era_dir / "convert.log")
        return output

    def convert_chunk(self, chunk: Chunk) -> None:
        self.convert(chunk.artifact_path, chunk.range_end, chunk.range_start)

    def convert_all(self, max_block: int) -> Optional[Path]:
        """Convert every downloaded era1 file into one ``blocks.rlp``.

        Returns ``None`` when the file already exists.
        """
        output = self.era_dir / "blocks.rlp"
        if output.exists():
            logger.info("RLP file already exists: %s (%d bytes); delete it to reconvert", output, output.stat().st_size)
            return None
        if not self._settings.era2rlp_bin.is_file():
            raise EnvironmentCheckError(f"era2rlp binary not found at {self._settings.era2rlp_bin}")
        count = self.era_file_count()
        if count == 0:
            raise EnvironmentCheckError(f"No .era1 files found in {self.era_dir}")
        logger.info("Converting %d era1 files → RLP (max block: %d)", count, max_block)
        self.convert(output, max_block)
        if not output.is_file():
            raise PipelineError(f"era2rlp produced no output at {output}")
        logger.info("RLP file ready: %s (%d bytes)", output, output.stat().st_size)
        return output

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------
    def import_blocks(
        self,
        rlp_path: Path,
        *,
        data_root: Path,
        ancient_dir: Path,
        log_path: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        cmd = [
            str(self._settings.geth_bin),
            "--datadir",
            str(data_root),
            "--datadir.ancient",
            str(ancient_dir),
            "--cache",
            str(self._settings.cache_mb),
            "--state.scheme",
            "hash",
            "--snapshot=false",
            "import",
            str(rlp_path),
        ]
        logger.info("  Importing into geth ...")
        self._invoke(cmd, "import", log_path, env=env)

    def _invoke(
        self,
        cmd: list,
        step: str,
        log_path: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        try:
            result = self._run(cmd, output=log_path, env=env)
        except (OSError, subprocess.SubprocessError) as exc:
            raise PipelineError(f"{step} failed: {exc}") from exc
        if result.returncode != 0:
            raise PipelineError(
                f"{step} exited with status {result.returncode}",
                log_tail=tail_file(log_path),
            )
