from zerotouch.modules.helm import HelmClient
from zerotouch.modules.models import HelmChartSource


def test_install_adds_repo_and_upgrades(runner, tmp_path):
    kubeconfig = tmp_path / "admin.conf"
    helm = HelmClient(kubeconfig=kubeconfig, runner=runner)
    chart = HelmChartSource(
        release="grafana",
        repo_name="grafana",
        repo_url="https://grafana.github.io/helm-charts",
        chart="grafana",
        version="8.5.1",
        values=(("service.type", "ClusterIP"),),
    )

    helm.install(chart, "monitoring")

    base = ["helm", "--kubeconfig", str(kubeconfig)]
    assert runner.calls[0] == base + ["repo", "add", "grafana", "https://grafana.github.io/helm-charts", "--force-update"]
    assert runner.calls[1] == base + ["repo", "update"]
    install = runner.calls[2]
    assert install[3:7] == ["upgrade", "--install", "grafana", "grafana/grafana"]
    assert install[install.index("--version") + 1] == "8.5.1"
    assert install[install.index("--namespace") + 1] == "monitoring"
    assert install[-2:] == ["--set", "service.type=ClusterIP"]


def test_callable_values_are_resolved_at_install(runner):
    resolved = []

    def values():
        resolved.append(True)
        return (("rootPassword", "s3cret"),)

    chart = HelmChartSource("minio", "minio", "https://charts.min.io/", "minio", "5.3.0", values=values)
    assert resolved == []

    HelmClient(runner=runner).install(chart, "minio-system")

    assert resolved == [True]
    assert runner.calls[-1][-2:] == ["--set", "rootPassword=s3cret"]
    assert runner.calls[-1][0:2] == ["helm", "upgrade"]
