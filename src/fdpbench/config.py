"""Configuration management for fdp-bench (pydantic-settings backed)."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _home(*parts: str) -> Path:
    return Path.home().joinpath(*parts)


class Settings(BaseSettings):
    """Benchmark settings loaded from environment variables.

    Field names map one-to-one onto upper-cased environment variables
    (``TOTAL_BLOCKS``, ``CHUNK_BLOCKS``, ``MOUNT_POINT``...).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Device and mount
    nvme_dev: str = "/dev/nvme0n1"
    mount_point: Path = Field(default_factory=lambda: _home("f2fs_fdp_mount"))
    fdp_tools: Path = Field(default_factory=lambda: _home("f2fs-tools-fdp"))
    fdp_stats: Path = Field(default_factory=lambda: _home("fdp_stats"))
    use_sudo: bool = True
    settle_seconds: float = Field(default=2.0, ge=0)
    device_tool_timeout: float = Field(default=60.0, gt=0)

    # Emulated device host (FTL counters live in a log on this host)
    host_ip: str = "10.0.2.2"
    host_user: str = "femu"
    host_femu_log: str = "/home/femu/femu-scripts/run-fdp.log"
    ssh_timeout: float = Field(default=15.0, gt=0)

    # Trial shape
    workload: Literal["replay", "network", "sui"] = "replay"
    baseline_label: str = "non-fdp"
    treatment_label: str = "fdp"
    baseline_streams: int = Field(default=1, gt=0)
    treatment_streams: int = Field(default=8, gt=0)
    results_dir: Path = Field(default_factory=lambda: Path.cwd() / "results")
    monitor_interval: float = Field(default=300.0, gt=0)
    trial_pause_seconds: float = Field(default=10.0, ge=0)

    # Process supervision
    ready_timeout: float = Field(default=60.0, gt=0)
    ready_poll_interval: float = Field(default=1.0, gt=0)
    shutdown_grace_seconds: float = Field(default=30.0, gt=0)
    consumer_grace_seconds: float = Field(default=5.0, gt=0)
    first_block_timeout: float = Field(default=120.0, gt=0)
    pid_discovery_timeout: float = Field(default=5.0, gt=0)

    # Ethereum binaries and data
    geth_bin: Path = Field(default_factory=lambda: _home("go-ethereum", "build", "bin", "geth"))
    era2rlp_bin: Path = Field(default_factory=lambda: _home("go-ethereum", "build", "bin", "era2rlp"))
    lighthouse_bin: Path = Field(default_factory=lambda: _home("lighthouse", "lighthouse"))
    spamoor_bin: Path = Field(default_factory=lambda: _home("spamoor", "bin", "spamoor"))
    era_server: str = "https://era1.ethportal.net"
    era_dir: Path = Field(default_factory=lambda: Path.cwd() / "era1")
    testnet_dir: Path = Field(default_factory=lambda: Path.cwd() / "testnet")

    # Replay pipeline
    total_blocks: int = Field(default=3_200_000, ge=0)
    chunk_blocks: int = Field(default=500_000, gt=0)
    cache_mb: int = Field(default=2048, gt=0)
    fetch_on_demand: bool = False
    pebble_no_compression: bool = True
    pebble_memtable_mb: int = Field(default=16, gt=0)

    # Node-pair network workload
    rpc_port: int = 8545
    engine_api_port: int = 8551
    beacon_api_port: int = 5052
    metrics_port: int = 6060
    slot_duration: str = "4s"
    network_mode: Literal["realistic", "storagespam", "uniswap", "erc20"] = "realistic"
    duration: int = Field(default=900, gt=0)
    seed_duration: int = Field(default=3300, ge=0)
    defi_duration: int = Field(default=600, ge=0)
    token_duration: int = Field(default=120, ge=0)
    seed_throughput: int = Field(default=120, gt=0)
    seed_gas_burn: int = Field(default=2_000_000, gt=0)
    defi_throughput: int = Field(default=400, gt=0)
    burst_throughput: int = Field(default=1000, gt=0)
    bg_throughput: int = Field(default=85, ge=0)
    bg_gas_burn: int = Field(default=2_000_000, gt=0)
    basefee_gwei: int = Field(default=50, ge=0)
    tipfee_gwei: int = Field(default=2, ge=0)
    refill_eth: int = Field(default=10, ge=0)
    dev_privkey: str = "b71c71a67e1177ad4e901695e1b4b9ee17ae16c6668d313eac2f96dbcda3f291"
    bg_privkey: str = "ac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
    fee_recipient: str = "0x71562b71999873DB5b286dF957af199Ec94617F7"

    # Sui single-node benchmark
    sui_bench_bin: Path = Field(
        default_factory=lambda: _home("sui-fdp", "target", "release", "sui-single-node-benchmark")
    )
    num_rounds: int = Field(default=10, gt=0)
    tx_count: int = Field(default=20_000, gt=0)
    num_batches: int = Field(default=10, gt=0)
    num_transfers: int = Field(default=10, gt=0)
    num_mints: int = Field(default=4, ge=0)
    nft_size: int = Field(default=8000, gt=0)
    bench_component: str = "validator-with-fake-consensus"

    # Application
    log_level: str = "INFO"

    @property
    def rpc_url(self) -> str:
        return f"http://127.0.0.1:{self.rpc_port}"

    @property
    def beacon_api_url(self) -> str:
        return f"http://127.0.0.1:{self.beacon_api_port}"

    @property
    def engine_api_url(self) -> str:
        return f"http://127.0.0.1:{self.engine_api_port}"

    @property
    def metrics_url(self) -> str:
        return f"http://127.0.0.1:{self.metrics_port}/debug/metrics"

    @property
    def workload_ports(self) -> tuple[int, ...]:
        """Ports the node-pair workload binds; reclaimed on shutdown."""
        return (self.rpc_port, self.engine_api_port, self.beacon_api_port)


# Global settings instance
settings = Settings()
