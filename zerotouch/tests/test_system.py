import subprocess
from pathlib import Path

import pytest

from zerotouch.errors import FatalError, TransientError
from zerotouch.utils import redact_args, write_atomic


def test_disable_swap_removes_fstab_entries(host, runner, write_file):
    fstab = write_file(host.path("/etc/fstab"), "UUID=abc / ext4 defaults 0 1\n/swap.img none swap sw 0 0\n")

    host.disable_swap()

    assert fstab.read_text() == "UUID=abc / ext4 defaults 0 1\n"
    assert runner.calls[0] == ["swapoff", "-a"]
    assert ["systemctl", "mask", "swap.target"] in runner.calls


def test_kernel_modules_and_sysctl(host, runner):
    host.configure_kernel_modules()
    host.configure_sysctl()

    assert host.path("/etc/modules-load.d/k8s.conf").read_text() == "overlay\nbr_netfilter\n"
    assert runner.commands("modprobe") == [["modprobe", "overlay"], ["modprobe", "br_netfilter"]]
    assert "net.ipv4.ip_forward = 1" in host.path("/etc/sysctl.d/k8s.conf").read_text()
    assert runner.commands("sysctl") == [["sysctl", "--system"]]


def test_network_check_retries_until_reachable(host, runner, clock):
    answers = iter([1, 1, 0])
    runner.hooks.append(
        lambda cmd, kwargs: subprocess.CompletedProcess(cmd, next(answers)) if cmd[0] == "ping" else None
    )

    host.test_network("8.8.8.8")

    assert len(runner.commands("ping")) == 3
    assert clock.sleeps == [5, 5]


def test_network_check_gives_up(host, runner):
    runner.responses[("ping",)] = subprocess.CompletedProcess([], 1)

    with pytest.raises(TransientError, match="Cannot reach 8.8.8.8"):
        host.test_network("8.8.8.8", attempts=2, delay=1)
    assert len(runner.commands("ping")) == 2


def test_service_that_stays_down_is_fatal(host, runner):
    runner.responses[("systemctl", "is-active")] = subprocess.CompletedProcess([], 3)

    with pytest.raises(FatalError, match="containerd failed to start"):
        host.ensure_service_running("containerd")
    assert ["systemctl", "start", "containerd"] in runner.calls


def test_flannel_plugin_link(host, runner, write_file):
    write_file(host.path("/opt/cni/bin/flannel"), "binary")

    assert host.link_flannel_plugin() is True
    assert host.path("/usr/lib/cni/flannel").is_symlink()
    assert runner.commands("systemctl", "restart") == [["systemctl", "restart", "containerd"]]

    assert host.link_flannel_plugin() is False
    assert len(runner.commands("systemctl", "restart")) == 1


def test_cleanup_keeps_join_artifacts_and_logs(host, write_file):
    bootstrap = host.path("/opt/bootstrap")
    write_file(bootstrap / "k8s-init.sh", "#!/bin/bash\n")
    write_file(bootstrap / "join-command.sh", "kubeadm join ...\n")
    write_file(bootstrap / "bootstrap.env", "VIP=1.2.3.4\n")
    write_file(host.path("/boot/firmware/user-data"), "#cloud-config\n")

    removed = host.cleanup_bootstrap(Path("/opt/bootstrap"))

    assert sorted(p.name for p in removed) == ["k8s-init.sh", "user-data"]
    assert (bootstrap / "join-command.sh").exists()
    assert (bootstrap / "bootstrap.env").exists()


def test_redact_args_hides_secrets():
    cmd = ["kubeadm", "join", "10.0.0.1:6443", "--token", "abc.def", "--certificate-key=k3y"]
    assert redact_args(cmd) == [
        "kubeadm", "join", "10.0.0.1:6443", "--token", "[REDACTED]", "--certificate-key=[REDACTED]",
    ]
    assert redact_args(["helm", "--set", "rootPassword=s3cret"]) == ["helm", "--set", "rootPassword=[REDACTED]"]


def test_write_atomic_sets_mode(tmp_path):
    target = tmp_path / "nested" / "certificate-key"

    write_atomic(target, "c0ffee\n", mode=0o600)

    assert target.read_text() == "c0ffee\n"
    assert target.stat().st_mode & 0o777 == 0o600
    assert [p.name for p in target.parent.iterdir()] == ["certificate-key"]
