import json
import logging
import subprocess

import pytest

from zerotouch.logging import COMPLETION_SENTINEL
from zerotouch.modules.models import NodeRole
from zerotouch.modules.orchestrator import Orchestrator
from zerotouch.modules.state import StateStore

JOIN_COMMAND = "kubeadm join 192.168.100.11:6443 --token abcdef.0123456789abcdef --discovery-token-ca-cert-hash sha256:1"


class FakeHelm:
    def __init__(self):
        self.installed = []

    def install(self, chart, namespace):
        self.installed.append(chart.release)


@pytest.fixture
def primary_config(config):
    config.cluster.admin_user = "root"
    config.addons.deploy_longhorn = False
    config.addons.deploy_minio = False
    config.addons.deploy_monitoring = False
    config.addons.deploy_portainer = False
    config.addons.deploy_welcome_page = False
    return config


@pytest.fixture
def fake_kubeadm(runner, config, write_file):
    def answer(cmd, kwargs):
        if cmd[:2] == ["kubeadm", "init"] and "--config" in cmd:
            write_file(config.paths.admin_kubeconfig, "apiVersion: v1\nkind: Config\n")
            return subprocess.CompletedProcess(cmd, 0, "", "")
        if cmd[:3] == ["kubeadm", "token", "create"]:
            return subprocess.CompletedProcess(cmd, 0, JOIN_COMMAND + "\n", "")
        if cmd[:4] == ["kubeadm", "init", "phase", "upload-certs"]:
            return subprocess.CompletedProcess(cmd, 0, "feedface\n", "")
        return None

    runner.hooks.append(answer)
    return answer


def make_orchestrator(config, clock, runner, kube, host):
    orchestrator = Orchestrator(
        config,
        clock=clock,
        sleep=clock.sleep,
        runner=runner,
        kube_factory=kube,
        api_probe=lambda endpoint: True,
        host=host,
        helm=FakeHelm(),
    )
    orchestrator.deployer.fetch = lambda url: []
    return orchestrator


def test_primary_bootstrap_end_to_end(primary_config, fake_kubeadm, clock, runner, kube, host, caplog):
    orchestrator = make_orchestrator(primary_config, clock, runner, kube, host)

    with caplog.at_level(logging.INFO, logger="zerotouch"):
        code = orchestrator.run()

    assert code == 0
    assert sorted(StateStore(primary_config.paths.state_dir).completed()) == sorted([
        "network", "prerequisites", "k8s-init", "cni", "metallb", "ingress", "cluster-ready",
    ])
    record = json.loads(primary_config.paths.provisioned_marker.read_text())
    assert record["node_identity"]["role"] == "primary"
    assert ("kube-system", "cluster-ready") in kube.configmaps
    assert primary_config.paths.join_command_file.is_file()

    messages = [r.getMessage() for r in caplog.records]
    assert messages[-1].startswith(f"{COMPLETION_SENTINEL}: node1 (primary)")
    assert messages[-2] == "=" * 74
    assert "NODE 1 INITIALIZATION STARTING" in messages
    assert "Skipping longhorn (disabled by configuration)" in messages
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


def test_second_run_is_a_no_op(primary_config, fake_kubeadm, clock, runner, kube, host):
    make_orchestrator(primary_config, clock, runner, kube, host).run()
    runner.calls.clear()

    code = make_orchestrator(primary_config, clock, runner, kube, host).run()

    assert code == 0
    assert runner.commands("kubeadm") == []


def test_force_reruns_pipeline_but_skips_completed_stages(primary_config, fake_kubeadm, clock, runner, kube, host, caplog):
    make_orchestrator(primary_config, clock, runner, kube, host).run()
    runner.calls.clear()

    with caplog.at_level(logging.INFO, logger="zerotouch"):
        code = make_orchestrator(primary_config, clock, runner, kube, host).run(force=True)

    assert code == 0
    assert runner.commands("kubeadm") == []
    assert "[1/7] Skipping network (already complete)" in caplog.text


def test_failed_cleanup_does_not_fail_a_provisioned_node(
    primary_config, fake_kubeadm, clock, runner, kube, host, monkeypatch, caplog
):
    def read_only(bootstrap_dir):
        raise PermissionError(13, "Permission denied", str(bootstrap_dir / "node1-init.sh"))

    monkeypatch.setattr(host, "cleanup_bootstrap", read_only)
    orchestrator = make_orchestrator(primary_config, clock, runner, kube, host)

    with caplog.at_level(logging.INFO, logger="zerotouch"):
        code = orchestrator.run()

    assert code == 0
    assert primary_config.paths.provisioned_marker.is_file()
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any(w.startswith("Bootstrap cleanup incomplete") for w in warnings)
    assert caplog.records[-1].getMessage().startswith(COMPLETION_SENTINEL)


def test_failed_addon_halts_the_run(primary_config, fake_kubeadm, clock, runner, kube, host, caplog):
    kube.not_ready.add("controller")
    orchestrator = make_orchestrator(primary_config, clock, runner, kube, host)

    code = orchestrator.run()

    assert code == 1
    completed = StateStore(primary_config.paths.state_dir).completed()
    assert sorted(completed) == ["cni", "k8s-init", "network", "prerequisites"]
    assert not primary_config.paths.provisioned_marker.exists()
    assert ("kube-system", "cluster-ready") not in kube.configmaps
    errors = [r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR]
    assert errors[-1].startswith("Stage 'metallb' failed")
    assert "metallb-system/controller" in errors[-1]


def test_secondary_join_end_to_end(config, clock, runner, kube, host, write_file, caplog):
    config.node.role = NodeRole.SECONDARY
    config.node.index = 2
    config.node.private_ip = "192.168.100.12"
    write_file(config.paths.join_command_file, f"#!/bin/bash\n{JOIN_COMMAND}\n")
    write_file(config.paths.join_admin_config, "apiVersion: v1\n")
    kube.configmaps.add(("kube-system", "cluster-ready"))
    orchestrator = make_orchestrator(config, clock, runner, kube, host)

    with caplog.at_level(logging.INFO, logger="zerotouch"):
        code = orchestrator.run()

    assert code == 0
    assert sorted(StateStore(config.paths.state_dir).completed()) == ["join-cluster", "network", "prerequisites"]
    (join,) = runner.commands("kubeadm", "join")
    assert "--control-plane" not in join
    messages = [r.getMessage() for r in caplog.records]
    assert "NODE JOIN STARTING" in messages
    assert messages[-1].startswith(f"{COMPLETION_SENTINEL}: node1 (secondary)")
