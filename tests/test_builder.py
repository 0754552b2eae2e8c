"""
Builder Tests

Tests for registering echo configs, deploying them and waiting until every
instance can reach every other one.
"""
import time

import pytest
from kubernetes.client.rest import ApiException

from conftest import echo_config
from meshecho.echo.builder import Builder, InstanceRef
from meshecho.echo.call import CallOptions
from meshecho.echo.config import Config, Port, Protocol
from meshecho.echo.errors import (
    ConvergenceTimeoutError,
    DeploymentError,
    UnboundReferenceError,
)
from meshecho.echo.failer import PytestFailer
from meshecho.kube.cluster import Cluster


class RecordingFailer:
    """Failer that records messages and returns instead of aborting."""

    def __init__(self):
        self.messages = []

    def fail(self, message):
        self.messages.append(message)


@pytest.fixture
def east():
    return Cluster(name="east", context="east")


@pytest.fixture
def west():
    return Cluster(name="west", context="west")


@pytest.fixture
def multi(mesh, east, west):
    return Builder(
        deployer=mesh,
        clusters=(east, west),
        convergence_timeout=5.0,
        convergence_concurrency=4,
        check_delay=0.0,
    )


@pytest.mark.unit
class TestRegistration:
    """Immutable registration and cluster scoping"""

    def test_with_config_returns_new_builder(self, builder):
        extended = builder.with_config(echo_config("a"))
        assert builder.registrations == ()
        assert len(extended.registrations) == 1
        assert extended is not builder

    def test_branches_are_independent(self, builder):
        base = builder.with_config(echo_config("a"))
        left = base.with_config(echo_config("b"))
        right = base.with_config(echo_config("c"))
        assert [r.config.service for r in left.registrations] == ["a", "b"]
        assert [r.config.service for r in right.registrations] == ["a", "c"]

    def test_cluster_scope_is_not_retroactive(self, multi, mesh, west):
        """with_clusters only affects configs registered after it"""
        built = (
            multi.with_config(echo_config("a"))
            .with_clusters(west)
            .with_config(echo_config("b"))
            .build()
        )

        assert sorted(mesh.deployed) == [("a", "east"), ("a", "west"), ("b", "west")]
        assert [i.name for i in built] == ["a@east", "a@west", "b@west"]

    def test_with_clusters_without_arguments_restores_defaults(self, multi, west):
        b = multi.with_clusters(west).with_clusters().with_config(echo_config("a"))
        assert [c.name for c in b.registrations[0].clusters] == ["east", "west"]

    def test_config_pinned_to_cluster(self, multi):
        b = multi.with_config(echo_config("a", cluster="west"))
        assert [c.name for c in b.registrations[0].clusters] == ["west"]

    def test_config_pinned_to_unknown_cluster(self, multi):
        with pytest.raises(ValueError, match="unknown cluster"):
            multi.with_config(echo_config("a", cluster="north"))

    def test_unbound_ref(self):
        ref = InstanceRef()
        assert not ref.bound
        with pytest.raises(UnboundReferenceError):
            ref.get()


@pytest.mark.unit
class TestBuild:
    """Deploy, converge and bind"""

    def test_empty_build(self, builder, mesh):
        assert builder.build() == []
        assert mesh.deployed == []

    def test_refs_bound_after_build(self, builder):
        a_ref, b_ref = InstanceRef(), InstanceRef()
        b = builder.with_instance(a_ref, echo_config("a")).with_instance(b_ref, echo_config("b"))
        assert not a_ref.bound

        instances = b.build()

        assert a_ref.get() is instances[0]
        assert b_ref.get().config.service == "b"

    def test_ref_bound_to_first_cluster(self, multi):
        ref = InstanceRef()
        multi.with_instance(ref, echo_config("a")).build()
        assert ref.get().cluster.name == "east"

    def test_every_ordered_pair_called(self, builder, mesh):
        builder.with_config(echo_config("a")).with_config(echo_config("b")).with_config(
            echo_config("c")
        ).build()

        for src in "abc":
            for dst in "abc":
                expected = 0 if src == dst else 1
                assert mesh.calls_between(src, dst) == expected, f"{src} -> {dst}"

    def test_instance_without_ports_is_not_a_destination(self, builder, mesh):
        builder.with_config(echo_config("a")).with_config(
            Config(service="client", namespace="echo", ports=[])
        ).build()

        assert mesh.calls_between("client", "a") == 1
        assert mesh.calls_between("a", "client") == 0

    def test_convergence_uses_first_http_port(self, builder, mesh):
        """A destination whose first port is TCP is called on its HTTP port"""
        db = echo_config(
            "db",
            ports=[
                Port(name="tcp", protocol=Protocol.TCP, service_port=9000),
                Port(name="http", service_port=80),
            ],
        )
        instances = builder.with_config(echo_config("a")).with_config(db).build()

        assert mesh.calls_between("a", "db") == 1
        assert [i.name for i in instances] == ["a@primary", "db@primary"]

    def test_destination_without_http_port_skipped(self, builder, mesh):
        raw = echo_config("raw", ports=[Port(name="tcp", protocol=Protocol.TCP, service_port=9000)])
        builder.with_config(echo_config("a")).with_config(raw).build()

        assert mesh.calls_between("a", "raw") == 0
        assert mesh.calls_between("raw", "a") == 1

    def test_transient_controller_error_does_not_abort_build(self, builder, mesh):
        """A failed workload listing during convergence is retried"""
        mesh.list_errors.append(ApiException(status=500, reason="etcd leader changed"))

        instances = builder.with_config(echo_config("a")).with_config(echo_config("b")).build()

        assert len(instances) == 2
        assert mesh.list_errors == []
        assert mesh.calls_between("a", "b") + mesh.calls_between("b", "a") >= 2

    def test_every_pair_callable_after_build(self, builder, mesh):
        """Pairs that were unreachable at first can call each other once build returns"""
        mesh.failures_left[("a", "b")] = 2
        mesh.failures_left[("c", "a")] = 1

        instances = (
            builder.with_config(echo_config("a"))
            .with_config(echo_config("b"))
            .with_config(echo_config("c"))
            .build()
        )

        for src in instances:
            for dst in instances:
                if src is not dst:
                    responses = src.call(CallOptions(target=dst))
                    assert responses.check_ok(), f"{src.name} -> {dst.name}"

    def test_slow_pair_does_not_block_others(self, builder, mesh):
        """Pairs that converge are not called again while others lag"""
        mesh.failures_left[("a", "b")] = 3

        builder.with_config(echo_config("a")).with_config(echo_config("b")).build()

        assert mesh.calls_between("a", "b") == 4
        assert mesh.calls_between("b", "a") == 1

    def test_deployment_failure_aborts_before_convergence(self, builder, mesh):
        mesh.deploy_errors["b"] = RuntimeError("image pull failed")
        ref = InstanceRef()
        b = builder.with_instance(ref, echo_config("a")).with_config(echo_config("b"))

        with pytest.raises(DeploymentError) as exc_info:
            b.build()

        assert len(exc_info.value.failures) == 1
        name, error = exc_info.value.failures[0]
        assert "echo/b" in name
        assert "image pull failed" in str(error)
        assert mesh.calls == [], "no convergence calls after a failed deployment"
        assert not ref.bound

    def test_nested_deployment_errors_flattened(self, builder, mesh):
        mesh.deploy_errors["a"] = DeploymentError([("echo/a@primary", RuntimeError("x"))])
        mesh.deploy_errors["b"] = DeploymentError([("echo/b@primary", RuntimeError("y"))])

        with pytest.raises(DeploymentError) as exc_info:
            builder.with_config(echo_config("a")).with_config(echo_config("b")).build()

        assert [name for name, _ in exc_info.value.failures] == ["echo/a@primary", "echo/b@primary"]

    @pytest.mark.real_sleep
    def test_convergence_timeout_lists_pending_pairs(self, mesh, primary):
        mesh.unreachable.add(("a", "b"))
        builder = Builder(
            deployer=mesh,
            clusters=(primary,),
            convergence_timeout=0.3,
            convergence_concurrency=2,
            check_delay=0.05,
        )
        ref = InstanceRef()

        started = time.monotonic()
        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            builder.with_instance(ref, echo_config("a")).with_config(echo_config("b")).build()

        assert time.monotonic() - started >= 0.3
        assert exc_info.value.pending == [("a@primary", "b@primary")]
        assert isinstance(exc_info.value, TimeoutError)
        assert mesh.calls_between("b", "a") == 1
        assert not ref.bound

    def test_build_or_fail_success(self, builder):
        instances = builder.with_config(echo_config("a")).build_or_fail(PytestFailer())
        assert len(instances) == 1

    def test_build_or_fail_reports_failure(self, builder, mesh):
        mesh.deploy_errors["a"] = RuntimeError("quota exceeded")
        failer = RecordingFailer()

        with pytest.raises(DeploymentError):
            builder.with_config(echo_config("a")).build_or_fail(failer)

        assert len(failer.messages) == 1
        assert "quota exceeded" in failer.messages[0]

    def test_build_or_fail_with_pytest(self, builder, mesh):
        mesh.deploy_errors["a"] = RuntimeError("quota exceeded")
        with pytest.raises(pytest.fail.Exception, match="quota exceeded"):
            builder.with_config(echo_config("a")).build_or_fail(PytestFailer())
