"""Tests for the certificate trust bootstrap."""

from conftest import ok

from fleetdeploy.exceptions import RemoteCommandError
from fleetdeploy.models import CertificateState, NodeRole
from fleetdeploy.services.trust_service import (
    AGENT_TEST_COMMAND,
    CA_LIST_COMMAND,
    CA_SIGN_COMMAND,
    CERTNAME_COMMAND,
    TrustBootstrapper,
    parse_certificate_list,
)

CA_LIST_SIGNED = """Signed Certificates:
    control.internal       (SHA256)  9F:00:AA  alt names: ["DNS:puppet"]
    frontend.internal      (SHA256)  1B:2C:3D
    backend.internal       (SHA256)  4E:5F:60
"""

CA_LIST_MIXED = """Requested Certificates:
    backend.internal       (SHA256)  4E:5F:60
Signed Certificates:
    control.internal       (SHA256)  9F:00:AA
    frontend.internal      (SHA256)  1B:2C:3D
Revoked Certificates:
    old.internal           (SHA256)  00:00:00
"""

CERT_WAIT = (
    "Info: Creating a new SSL certificate request\n"
    "Exiting; no certificate found and waitforcert is disabled"
)


def certname_for(node, _command):
    return ok(f"{node.name}.internal\n")


def make_bootstrapper(remote, sleeper):
    return TrustBootstrapper(remote, settle_delay=60, sleep=sleeper, ca_retry_delay=0)


def test_parse_certificate_list():
    records = parse_certificate_list(CA_LIST_MIXED)

    assert {(r.subject, r.state) for r in records} == {
        ("backend.internal", CertificateState.PENDING),
        ("control.internal", CertificateState.SIGNED),
        ("frontend.internal", CertificateState.SIGNED),
    }


def test_parse_empty_list():
    assert parse_certificate_list("") == []


def test_already_signed_fleet_signs_once(remote, fleet, sleeper):
    remote.on(CA_LIST_COMMAND, ok(CA_LIST_SIGNED))
    remote.on(CA_SIGN_COMMAND, ok(stderr="Error: No waiting certificate requests to sign", returncode=24))
    remote.on(CERTNAME_COMMAND, certname_for)
    remote.on(AGENT_TEST_COMMAND, ok("Notice: Applied catalog", returncode=0))

    report = make_bootstrapper(remote, sleeper).bootstrap(fleet)

    assert remote.count(CA_SIGN_COMMAND) == 1
    assert report.sign_rounds == 1
    assert report.all_signed
    assert report.errors() == {}
    assert sleeper.waits[0] == 60


def test_certificate_warning_triggers_second_round(remote, fleet, sleeper):
    agent_results = {"backend": [ok(CERT_WAIT, returncode=1), ok("done", returncode=2)]}

    def agent(node, _command):
        queue = agent_results.get(node.name)
        return queue.pop(0) if queue else ok("done")

    lists = [ok(CA_LIST_MIXED), ok(CA_LIST_SIGNED)]
    remote.on(CA_LIST_COMMAND, lambda node, command: lists.pop(0) if len(lists) > 1 else lists[0])
    remote.on(CERTNAME_COMMAND, certname_for)
    remote.on(AGENT_TEST_COMMAND, agent)

    report = make_bootstrapper(remote, sleeper).bootstrap(fleet)

    backend = fleet.get(NodeRole.BACKEND)
    assert report.sign_rounds == 2
    assert remote.count(CA_SIGN_COMMAND) == 2
    assert remote.commands_for(backend).count(AGENT_TEST_COMMAND) == 2
    assert remote.commands_for(fleet.control).count(AGENT_TEST_COMMAND) == 1
    assert report.all_signed


def test_never_more_than_two_sign_rounds(remote, fleet, sleeper):
    remote.on(CA_LIST_COMMAND, ok(CA_LIST_MIXED))
    remote.on(CERTNAME_COMMAND, certname_for)
    remote.on(AGENT_TEST_COMMAND, ok(CERT_WAIT, returncode=1))

    report = make_bootstrapper(remote, sleeper).bootstrap(fleet)

    assert remote.count(CA_SIGN_COMMAND) == 2
    backend = fleet.get(NodeRole.BACKEND)
    assert report.states[backend] == CertificateState.PENDING
    errors = report.errors()
    assert set(errors) == {backend}
    assert errors[backend].state == "pending"


def test_unreachable_control_node_is_retried(remote, fleet, sleeper):
    attempts = []

    def flaky_list(node, command):
        attempts.append(command)
        if len(attempts) == 1:
            raise RemoteCommandError(node.address, command, "Connection refused")
        return ok(CA_LIST_SIGNED)

    remote.on(CA_LIST_COMMAND, flaky_list)
    remote.on(CERTNAME_COMMAND, certname_for)

    states = make_bootstrapper(remote, sleeper).observe(fleet)

    assert len(attempts) == 2
    assert set(states.values()) == {CertificateState.SIGNED}


def test_observe_unknown_certname_is_requested(remote, fleet, sleeper):
    remote.on(CA_LIST_COMMAND, ok(CA_LIST_SIGNED))
    remote.on(CERTNAME_COMMAND, ok(returncode=1))

    states = make_bootstrapper(remote, sleeper).observe(fleet)

    assert set(states.values()) == {CertificateState.REQUESTED}
    assert remote.count(CA_SIGN_COMMAND) == 0
