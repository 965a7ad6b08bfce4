from __future__ import annotations

import subprocess

import pytest

from fdpbench.trial.errors import ProvisioningError
from fdpbench.trial.remote import RemoteTelemetry, parse_waf
from fdpbench.trial.volume import VolumeProvisioner


def test_prepare_formats_mounts_and_opens_permissions(make_settings, runner, fake_clock) -> None:
    settings = make_settings()
    provisioner = VolumeProvisioner(settings, runner, fake_clock)

    provisioner.prepare(8)

    steps = [argv[0].rsplit("/", 1)[-1] for argv, _ in runner.calls]
    assert steps == ["umount", "mkfs.f2fs", "fdp_f2fs_mount", "chmod"]
    assert runner.calls[2][0][-1] == "8"
    assert provisioner.mounted


def test_sudo_prefix_applies_when_enabled(make_settings, runner, fake_clock) -> None:
    provisioner = VolumeProvisioner(make_settings(use_sudo=True), runner, fake_clock)
    provisioner.prepare(1)
    assert all(argv[0] == "sudo" for argv, _ in runner.calls)


def test_mount_failure_is_fatal(make_settings, runner, fake_clock) -> None:
    runner.on("fdp_f2fs_mount", returncode=32, stderr="mount: wrong fs type")
    provisioner = VolumeProvisioner(make_settings(), runner, fake_clock)

    with pytest.raises(ProvisioningError, match="wrong fs type"):
        provisioner.prepare(8)
    assert not provisioner.mounted


def test_zero_streams_rejected(make_settings, runner, fake_clock) -> None:
    with pytest.raises(ValueError):
        VolumeProvisioner(make_settings(), runner, fake_clock).prepare(0)
    assert runner.calls == []


def test_unmount_of_unmounted_volume_is_not_an_error(make_settings, runner, fake_clock) -> None:
    runner.on("umount", returncode=32, stderr="umount: /mnt: not mounted.")
    provisioner = VolumeProvisioner(make_settings(), runner, fake_clock)
    provisioner.teardown()
    assert not provisioner.mounted


def test_counter_reset_failure_is_best_effort(make_settings, runner, fake_clock) -> None:
    runner.on("--reset", returncode=1, stderr="device busy")
    outcome = VolumeProvisioner(make_settings(settle_seconds=2.0), runner, fake_clock).reset()
    assert outcome.status == "error"
    assert outcome.reason == "device busy"
    assert fake_clock.sleeps == [2.0]


def test_snapshot_uses_read_only_stats(make_settings, runner, fake_clock) -> None:
    outcome = VolumeProvisioner(make_settings(), runner, fake_clock).snapshot()
    assert outcome.is_ok
    assert runner.calls[0][0][-1] == "--read-only"


def test_parse_waf_reads_last_figure_of_last_line() -> None:
    text = "WAF: 1.90\nGC copied 12\nFTL WAF now 2.41 (host 4.0)\0\n"
    outcome = parse_waf(text)
    assert outcome.is_ok
    assert outcome.value == 4.0


def test_parse_waf_without_line_is_unavailable() -> None:
    assert parse_waf("GC copied: 12\n").status == "unavailable"


def test_remote_timeout_is_unavailable_not_fatal(make_settings) -> None:
    def slow_runner(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

    outcome = RemoteTelemetry(make_settings(), slow_runner).read_waf()
    assert outcome.status == "unavailable"
    assert "timed out" in outcome.reason


def test_remote_waf_read_over_ssh(make_settings, runner) -> None:
    runner.on("ssh", stdout="Host written 10\nWAF: 2.41\n")
    outcome = RemoteTelemetry(make_settings(host_user="femu", host_ip="10.0.2.2"), runner).read_waf()
    assert outcome.value == 2.41
    assert "femu@10.0.2.2" in runner.calls[0][0]


def test_counter_commands_are_bounded_by_a_timeout(make_settings, runner, fake_clock) -> None:
    provisioner = VolumeProvisioner(make_settings(device_tool_timeout=7.0), runner, fake_clock)
    provisioner.reset()
    provisioner.snapshot()
    assert [kwargs["timeout"] for _, kwargs in runner.calls] == [7.0, 7.0]


def test_hung_device_tool_degrades_to_unavailable(make_settings, fake_clock) -> None:
    def hanging_runner(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    outcome = VolumeProvisioner(make_settings(device_tool_timeout=3.0), hanging_runner, fake_clock).snapshot()
    assert outcome.status == "unavailable"
    assert outcome.reason == "timed out after 3s"
