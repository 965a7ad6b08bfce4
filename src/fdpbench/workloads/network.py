"""Execution/consensus node pair driven by spamoor transaction phases."""

from __future__ import annotations

import logging
import secrets
import shutil
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence

from fdpbench.config import Settings
from fdpbench.metrics import parsing
from fdpbench.metrics.extractor import rate, scrape_live_metrics
from fdpbench.metrics.store import seconds_display
from fdpbench.timing import Deadline, ticks
from fdpbench.trial.errors import EnvironmentCheckError, ProcessStartError, WorkloadError
from fdpbench.trial.layout import process_env
from fdpbench.trial.models import MetricsRecord, ProcessHandle, ProcessRole, ShutdownPolicy
from fdpbench.trial.supervisor import http_probe
from fdpbench.utils import secs_to_duration, tail_file
from fdpbench.workloads.base import Workload, WorkloadResult, fmt
from fdpbench.workloads.rpc import RpcClient

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from fdpbench.trial.harness import TrialContext

logger = logging.getLogger(__name__)

# spamoor exits on its own --timeout; allow this much extra before giving up on it
SPAMOOR_TIMEOUT_SLACK = 300


@dataclass
class MeasuredWindow:
    start_block: int
    end_block: int
    start_ts: float
    end_ts: float
    main_log: Path

    @property
    def blocks(self) -> int:
        return self.end_block - self.start_block

    @property
    def seconds(self) -> int:
        return int(self.end_ts - self.start_ts)


class NetworkWorkload(Workload):
    name = "network"
    title = "Node Network"

    def check_prerequisites(self, settings: Settings) -> None:
        for label, binary in (
            ("geth", settings.geth_bin),
            ("lighthouse", settings.lighthouse_bin),
            ("spamoor", settings.spamoor_bin),
        ):
            if not binary.is_file():
                raise EnvironmentCheckError(f"{label} binary not found at {binary}")
        if not (settings.testnet_dir / "validator_keys" / "keys").is_dir():
            raise EnvironmentCheckError(
                f"Validator keys missing under {settings.testnet_dir}; generate the testnet first"
            )
        for name in ("genesis.json", "config.yaml", "genesis.ssz"):
            if not (settings.testnet_dir / name).is_file():
                raise EnvironmentCheckError(f"{settings.testnet_dir / name} missing; generate genesis first")

    def describe(self, settings: Settings) -> List[str]:
        if settings.network_mode == "realistic":
            return [
                f"Mode: realistic  Phases: {settings.seed_duration}s + {settings.defi_duration}s "
                f"+ {settings.token_duration}s"
            ]
        return [f"Mode: {settings.network_mode}  Duration: {settings.duration}s"]

    def run(self, ctx: "TrialContext") -> WorkloadResult:
        settings = ctx.settings
        layout = ctx.layout
        if layout.streams > 1:
            logger.info("FDP placement (%d streams): WAL/flush/L0/mid/deep on p0-p4, ancient p5, CL hot/cold p6/p7", layout.streams)
        else:
            logger.info("Non-FDP baseline (single stream, all data maps to p0)")

        self._ensure_jwt(layout.jwt_secret)
        geth_env = process_env(
            layout.geth_env(
                no_compression=settings.pebble_no_compression,
                memtable_mb=settings.pebble_memtable_mb,
            )
        )
        self._init_chain(ctx, geth_env)
        self._start_geth(ctx, geth_env)
        self._start_lighthouse(ctx)

        rpc = RpcClient(settings.rpc_url)
        self._wait_first_block(ctx, rpc)

        bench_start_block = rpc.block_number()
        bench_start_ts = ctx.clock.time()
        if settings.network_mode == "realistic":
            window = self._run_realistic(ctx, rpc)
        else:
            window = self._run_single(ctx, rpc)
        bench_end_block = rpc.block_number()
        bench_end_ts = ctx.clock.time()

        confirmed = 0
        if window.end_block > window.start_block:
            logger.info("Counting confirmed txs in blocks %d..%d ...", window.start_block + 1, window.end_block)
            confirmed = rpc.count_transactions(window.start_block, window.end_block)
            logger.info("Confirmed txs in measurement window: %d", confirmed)

        ctx.provisioner.snapshot()
        live = scrape_live_metrics(settings.metrics_url, save_to=ctx.trial_dir / "pebble_metrics_raw.txt")

        logger.info("Stopping EL + CL")
        ctx.supervisor.shutdown()
        geth_log = ctx.trial_dir / "geth.log"
        try:
            shutil.copyfile(layout.logs_dir / "geth.log", geth_log)
        except OSError as exc:
            logger.warning("Unable to copy geth log: %s", exc)

        total_blocks = bench_end_block - bench_start_block
        total_seconds = int(bench_end_ts - bench_start_ts)
        throughput_txb = parsing.last_value("60B", parsing.read_lines(window.main_log))
        confirmed_tps = rate(confirmed, window.seconds)
        bps = rate(window.blocks, window.seconds)
        total_bps = rate(total_blocks, total_seconds)
        counters = {
            "confirmed_tps": round(confirmed_tps, 1) if confirmed_tps is not None else None,
            "confirmed_txs": float(confirmed),
            "throughput_txb": throughput_txb if throughput_txb is not None else 0.0,
            "bps": round(bps, 4) if bps is not None else None,
            "total_bps": round(total_bps, 4) if total_bps is not None else None,
            "main_phase_blocks": float(window.blocks),
            "main_phase_seconds": float(window.seconds),
            "total_blocks": float(total_blocks),
            "total_seconds": float(total_seconds),
        }
        return WorkloadResult(
            counters=counters,
            stall_stats=True,
            graceful_logs=(geth_log,),
            stall_aggregate="last",
            live=live,
        )

    def summary_lines(self, record: MetricsRecord, result: WorkloadResult) -> List[str]:
        return [
            "Workload: EthPandaOps spamoor",
            "",
            "--- Primary Metrics (main phase) ---",
            f"Confirmed TPS:        {fmt(record.get('confirmed_tps'))} tx/s  "
            f"({fmt(record.get('confirmed_txs'))} txs in {fmt(record.get('main_phase_blocks'))} blocks)",
            f"Throughput:           {fmt(record.get('throughput_txb'))} tx/block  (spamoor 60-block avg)",
            f"Blocks/sec:           {fmt(record.get('bps'))}  "
            f"({fmt(record.get('main_phase_blocks'))} blocks / {fmt(record.get('main_phase_seconds'))}s)",
            f"WAF:                  {fmt(record.get('waf'))}",
            f"Write Stalls:         {fmt(record.get('stall_count'))}  "
            f"(total time: {seconds_display(record.get('stall_time_ms'))})",
            f"Compaction Time:      {seconds_display(record.get('compaction_time_ms'))}",
            f"L0 / non-L0 compactions: {fmt(record.get('level0_compactions'))} / "
            f"{fmt(record.get('non_level0_compactions'))}",
        ]

    # ------------------------------------------------------------------
    # Node lifecycle
    # ------------------------------------------------------------------
    def _ensure_jwt(self, path: Path) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(secrets.token_hex(32), encoding="utf-8")
        logger.info("Generated JWT secret: %s", path)

    def _init_chain(self, ctx: "TrialContext", env: dict) -> None:
        settings = ctx.settings
        log_path = ctx.layout.logs_dir / "geth_init.log"
        cmd = [
            str(settings.geth_bin),
            "init",
            "--datadir",
            str(ctx.layout.data_root),
            "--state.scheme",
            "hash",
            str(settings.testnet_dir / "genesis.json"),
        ]
        logger.info("Initializing geth with genesis.json ...")
        try:
            result = ctx.runner(cmd, env=env, output=log_path)
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProcessStartError(f"geth init failed: {exc}") from exc
        if result.returncode != 0:
            raise ProcessStartError(
                f"geth init exited with status {result.returncode}",
                log_tail=tail_file(log_path),
            )

    def _start_geth(self, ctx: "TrialContext", env: dict) -> ProcessHandle:
        settings = ctx.settings
        layout = ctx.layout
        cmd = [
            str(settings.geth_bin),
            "--datadir", str(layout.data_root),
            "--datadir.ancient", str(layout.tier_dir("ancient")),
            "--networkid", "32382",
            "--nodiscover",
            "--syncmode", "full",
            "--gcmode", "full",
            "--state.scheme", "hash",
            "--cache", str(settings.cache_mb),
            "--http", "--http.api", "eth,net,txpool,debug,admin,miner,web3",
            "--http.addr", "0.0.0.0",
            "--http.port", str(settings.rpc_port),
            "--rpc.txfeecap", "0",
            "--authrpc.addr", "0.0.0.0",
            "--authrpc.port", str(settings.engine_api_port),
            "--authrpc.jwtsecret", str(layout.jwt_secret),
            "--authrpc.vhosts", "*",
            "--miner.gaslimit", "500000000",
            "--metrics", "--metrics.addr", "127.0.0.1", "--metrics.port", str(settings.metrics_port),
            "--txpool.globalslots", "200000",
            "--snapshot=false",
            "--verbosity", "3",
        ]  # fmt: skip
        logger.info("Starting geth (EL) ...")
        handle = ctx.supervisor.spawn(
            "geth",
            ProcessRole.PRODUCER,
            cmd,
            log_path=layout.logs_dir / "geth.log",
            env=env,
            # SIGINT lets geth close Pebble and log its write stall stats
            policy=ShutdownPolicy(graceful_signal=signal.SIGINT, grace_seconds=settings.shutdown_grace_seconds),
        )
        ctx.supervisor.await_ready(
            handle,
            http_probe(settings.rpc_url, json_rpc_method="eth_blockNumber"),
            timeout=settings.ready_timeout,
            interval=settings.ready_poll_interval,
        )
        return handle

    def _start_lighthouse(self, ctx: "TrialContext") -> None:
        settings = ctx.settings
        layout = ctx.layout
        self._install_validator_keys(settings.testnet_dir / "validator_keys", layout.validator_dir)
        env = process_env({})
        policy = ShutdownPolicy(graceful_signal=signal.SIGTERM, grace_seconds=settings.consumer_grace_seconds)

        logger.info("Starting beacon node ...")
        bn_cmd = [
            str(settings.lighthouse_bin), "beacon_node",
            "--testnet-dir", str(settings.testnet_dir),
            "--datadir", str(layout.tier_dir("cl_hot")),
            "--freezer-dir", str(layout.tier_dir("cl_cold")),
            "--execution-endpoint", settings.engine_api_url,
            "--execution-jwt", str(layout.jwt_secret),
            "--staking",
            "--http-address", "0.0.0.0",
            "--http-port", str(settings.beacon_api_port),
            "--enr-address", "127.0.0.1",
            "--listen-address", "0.0.0.0",
            "--port", "9000",
            "--target-peers", "0",
            "--disable-packet-filter",
            "--enable-private-discovery",
            "--allow-insecure-genesis-sync",
            "--disable-upnp",
            "--disable-quic",
            "--epochs-per-migration", "1",
            "--debug-level", "info",
            "--logfile-dir", str(layout.logs_dir),
            "--logfile-max-number", "3",
        ]  # fmt: skip
        beacon = ctx.supervisor.spawn(
            "beacon-node",
            ProcessRole.CONSUMER,
            bn_cmd,
            log_path=layout.logs_dir / "lighthouse_bn.log",
            env=env,
            match=r"lighthouse.*beacon_node.*--datadir",
            policy=policy,
        )
        ctx.supervisor.await_ready(
            beacon,
            http_probe(f"{settings.beacon_api_url}/eth/v1/node/health"),
            timeout=settings.ready_timeout,
            interval=settings.ready_poll_interval,
        )

        logger.info("Starting validator client ...")
        vc_cmd = [
            str(settings.lighthouse_bin), "validator_client",
            "--testnet-dir", str(settings.testnet_dir),
            "--datadir", str(layout.validator_dir),
            "--beacon-nodes", settings.beacon_api_url,
            "--suggested-fee-recipient", settings.fee_recipient,
            "--init-slashing-protection",
            "--debug-level", "info",
            "--logfile-dir", str(layout.logs_dir),
        ]  # fmt: skip
        ctx.supervisor.spawn(
            "validator-client",
            ProcessRole.CONSUMER,
            vc_cmd,
            log_path=layout.logs_dir / "lighthouse_vc.log",
            env=env,
            match=r"lighthouse.*validator_client",
            policy=policy,
        )

    def _install_validator_keys(self, source: Path, vc_dir: Path) -> None:
        validators = vc_dir / "validators"
        if validators.is_dir():
            logger.info("Validator keys already in place (%d validators)", len(list(validators.iterdir())))
            return
        keys = source / "keys"
        if not keys.is_dir():
            logger.warning("No validator keys found in %s", source)
            return
        shutil.copytree(keys, validators, dirs_exist_ok=True)
        if (source / "secrets").is_dir():
            shutil.copytree(source / "secrets", vc_dir / "secrets", dirs_exist_ok=True)
        logger.info("Prepared %d validators", len(list(validators.iterdir())))

    def _wait_first_block(self, ctx: "TrialContext", rpc: RpcClient) -> None:
        logger.info("Waiting for first CL-proposed block ...")
        deadline = Deadline(ctx.settings.first_block_timeout, ctx.clock)
        for _ in ticks(deadline, 1.0, ctx.clock):
            number = rpc.block_number()
            if number > 0:
                logger.info("First block detected: blockNumber=%d", number)
                return
        logger.warning(
            "No blocks after %.0fs; check %s",
            ctx.settings.first_block_timeout,
            ctx.layout.logs_dir / "lighthouse_bn.log",
        )

    # ------------------------------------------------------------------
    # Transaction phases
    # ------------------------------------------------------------------
    def _run_realistic(self, ctx: "TrialContext", rpc: RpcClient) -> MeasuredWindow:
        settings = ctx.settings
        total = settings.seed_duration + settings.defi_duration + settings.token_duration
        logger.info("=== REALISTIC MODE: 3 phases, total %ds (~%d min) ===", total, total // 60)

        if settings.seed_duration > 0:
            logger.info("──── Phase 1: storagespam (state accumulation) × %ds ────", settings.seed_duration)
            self._run_spamoor(
                ctx,
                "storagespam",
                settings.seed_duration,
                settings.seed_throughput,
                "phase_seed.log",
                settings.dev_privkey,
                ["--gas-units-to-burn", str(settings.seed_gas_burn)],
            )
        ctx.provisioner.snapshot()

        start_block = rpc.block_number()
        start_ts = ctx.clock.time()
        churn: Optional[ProcessHandle] = None
        if settings.defi_duration > 0 and settings.bg_throughput > 0:
            churn = self._start_background_churn(ctx)
        try:
            if settings.defi_duration > 0:
                logger.info("──── Phase 2: uniswap-swaps (MEASURED) × %ds ────", settings.defi_duration)
                self._run_spamoor(
                    ctx,
                    "uniswap-swaps",
                    settings.defi_duration,
                    settings.defi_throughput,
                    "phase_defi.log",
                    settings.bg_privkey,
                )
        finally:
            if churn is not None:
                ctx.supervisor.shutdown([churn])
                logger.info("Background storagespam stopped")
        window = MeasuredWindow(
            start_block=start_block,
            end_block=rpc.block_number(),
            start_ts=start_ts,
            end_ts=ctx.clock.time(),
            main_log=ctx.trial_dir / "phase_defi.log",
        )
        ctx.provisioner.snapshot()

        if settings.token_duration > 0:
            logger.info("──── Phase 3: erc20tx (ERC-20 burst) × %ds ────", settings.token_duration)
            self._run_spamoor(
                ctx,
                "erc20tx",
                settings.token_duration,
                settings.burst_throughput,
                "phase_token.log",
                settings.bg_privkey,
            )
        return window

    def _run_single(self, ctx: "TrialContext", rpc: RpcClient) -> MeasuredWindow:
        settings = ctx.settings
        scenarios = {
            "storagespam": ("storagespam", settings.seed_throughput, ["--gas-units-to-burn", str(settings.seed_gas_burn)]),
            "uniswap": ("uniswap-swaps", settings.defi_throughput, []),
            "erc20": ("erc20tx", settings.burst_throughput, []),
        }
        scenario, throughput, extra = scenarios[settings.network_mode]
        start_block = rpc.block_number()
        start_ts = ctx.clock.time()
        logger.info("──── Single mode: %s × %ds ────", scenario, settings.duration)
        self._run_spamoor(ctx, scenario, settings.duration, throughput, "phase_main.log", settings.dev_privkey, extra)
        return MeasuredWindow(
            start_block=start_block,
            end_block=rpc.block_number(),
            start_ts=start_ts,
            end_ts=ctx.clock.time(),
            main_log=ctx.trial_dir / "phase_main.log",
        )

    def _spamoor_cmd(
        self,
        settings: Settings,
        scenario: str,
        duration_s: int,
        throughput: int,
        privkey: str,
        extra: Sequence[str] = (),
    ) -> List[str]:
        return [
            str(settings.spamoor_bin),
            scenario,
            "-h", settings.rpc_url,
            "-p", f"0x{privkey}",
            "--slot-duration", settings.slot_duration,
            "--timeout", secs_to_duration(duration_s),
            "--throughput", str(throughput),
            "--basefee", str(settings.basefee_gwei),
            "--tipfee", str(settings.tipfee_gwei),
            "--refill-amount", str(settings.refill_eth),
            *extra,
        ]  # fmt: skip

    def _run_spamoor(
        self,
        ctx: "TrialContext",
        scenario: str,
        duration_s: int,
        throughput: int,
        log_name: str,
        privkey: str,
        extra: Sequence[str] = (),
    ) -> None:
        log_path = ctx.trial_dir / log_name
        cmd = self._spamoor_cmd(ctx.settings, scenario, duration_s, throughput, privkey, extra)
        logger.info("  spamoor %s: throughput=%d tx/slot, timeout=%s", scenario, throughput, secs_to_duration(duration_s))
        try:
            result = ctx.runner(cmd, output=log_path, timeout=duration_s + SPAMOOR_TIMEOUT_SLACK)
        except subprocess.TimeoutExpired as exc:
            raise WorkloadError(f"spamoor {scenario} overran its {duration_s}s budget", log_tail=tail_file(log_path)) from exc
        except OSError as exc:
            raise WorkloadError(f"spamoor {scenario} failed to start: {exc}") from exc
        if result.returncode != 0:
            raise WorkloadError(
                f"spamoor {scenario} exited with status {result.returncode}",
                log_tail=tail_file(log_path),
            )

    def _start_background_churn(self, ctx: "TrialContext") -> ProcessHandle:
        settings = ctx.settings
        logger.info("Starting background storagespam (throughput=%d tx/slot)", settings.bg_throughput)
        cmd = self._spamoor_cmd(
            settings,
            "storagespam",
            settings.defi_duration,
            settings.bg_throughput,
            settings.dev_privkey,
            ["--gas-units-to-burn", str(settings.bg_gas_burn)],
        )
        return ctx.supervisor.spawn(
            "spamoor-bg",
            ProcessRole.BENCHMARK_CLIENT,
            cmd,
            log_path=ctx.trial_dir / "phase_bg_churn.log",
            policy=ShutdownPolicy(graceful_signal=signal.SIGTERM, grace_seconds=settings.consumer_grace_seconds),
        )
