import pytest

from zerotouch import config as config_module
from zerotouch.config import BootstrapConfig
from zerotouch.errors import ConfigurationError
from zerotouch.modules.models import NodeRole


@pytest.fixture(autouse=True)
def no_default_env_files(monkeypatch):
    monkeypatch.setattr(config_module, "DEFAULT_ENV_FILES", [])


def test_defaults_describe_a_primary_node():
    config = BootstrapConfig.from_env(environ={"NODE_HOSTNAME": "node1"})

    assert config.node.role == NodeRole.PRIMARY
    assert config.node.private_ip == "192.168.100.11"
    assert config.identity().is_primary
    assert config.paths.state_dir.as_posix() == "/opt/bootstrap/.state"
    assert config.network.load_balancer_range == "192.168.1.100-192.168.1.100"
    assert config.addons.deploy_longhorn is True


def test_node_num_selects_secondary():
    config = BootstrapConfig.from_env(environ={"NODE_NUM": "3", "NODE_PRIVATE_IP": "192.168.100.13"})

    assert config.node.role == NodeRole.SECONDARY
    assert config.node.index == 3
    assert config.node.private_ip == "192.168.100.13"
    assert config.cluster.api_endpoint == "192.168.100.11:6443"


def test_empty_node_num_means_primary():
    config = BootstrapConfig.from_env(environ={"NODE_NUM": ""})

    assert config.node.role == NodeRole.PRIMARY
    assert config.node.index == 1


def test_node_role_wins_over_node_num():
    config = BootstrapConfig.from_env(environ={"NODE_ROLE": "Primary", "NODE_NUM": "2"})

    assert config.node.role == NodeRole.PRIMARY


def test_secondary_requires_private_ip():
    with pytest.raises(ConfigurationError, match="NODE_PRIVATE_IP"):
        BootstrapConfig.from_env(environ={"NODE_ROLE": "secondary"})


def test_unknown_role_is_rejected():
    with pytest.raises(ConfigurationError, match="NODE_ROLE"):
        BootstrapConfig.from_env(environ={"NODE_ROLE": "worker"})


@pytest.mark.parametrize("key,value", [("VIP", "999.1.1.1"), ("POD_CIDR", "10.244.0.0/99"), ("NODE1_PRIVATE_IP", "node1")])
def test_invalid_addresses_are_configuration_errors(key, value):
    with pytest.raises(ConfigurationError, match="Invalid bootstrap configuration"):
        BootstrapConfig.from_env(environ={key: value})


def test_environment_overrides_env_file(tmp_path):
    env_file = tmp_path / "bootstrap.env"
    env_file.write_text("VIP=10.0.0.5\nK8S_VERSION=v1.29.1\nDEPLOY_MINIO=false\n")

    config = BootstrapConfig.from_env(environ={"VIP": "10.0.0.6"}, env_file=env_file)

    assert config.network.vip == "10.0.0.6"
    assert config.cluster.kubernetes_version == "1.29.1"
    assert config.addons.deploy_minio is False


def test_missing_env_file():
    with pytest.raises(ConfigurationError, match="not found"):
        BootstrapConfig.from_env(environ={}, env_file="/nonexistent/bootstrap.env")


@pytest.mark.parametrize("value,expected", [("false", False), ("0", False), ("no", False), ("yes", True), ("", True)])
def test_grafana_flag_controls_monitoring(value, expected):
    config = BootstrapConfig.from_env(environ={"DEPLOY_GRAFANA": value})

    assert config.addons.deploy_monitoring is expected


def test_paths_follow_bootstrap_dir():
    config = BootstrapConfig.from_env(environ={"BOOTSTRAP_DIR": "/srv/boot", "PROVISIONED_MARKER": "/tmp/p"})

    assert config.paths.join_command_file.as_posix() == "/srv/boot/join-command.sh"
    assert config.paths.state_dir.as_posix() == "/srv/boot/.state"
    assert config.paths.provisioned_marker.as_posix() == "/tmp/p"
