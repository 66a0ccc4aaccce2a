from transit_ledger.utils import health_check


def _healthy(_config):
    return {'healthy': True}


def _unreachable(_config):
    raise ConnectionError('endpoint unreachable')


def test_all_probes_healthy(monkeypatch):
    monkeypatch.setattr(health_check, 'PROBES', {'a': ('Service A', _healthy), 'b': ('Service B', _healthy)})

    assert health_check.get_health_status() == {
        'a': {'service': 'Service A', 'healthy': True},
        'b': {'service': 'Service B', 'healthy': True},
    }
    assert health_check.check_health() is True


def test_failing_probe_is_reported_not_raised(monkeypatch):
    monkeypatch.setattr(health_check, 'PROBES', {'a': ('Service A', _healthy), 'search': ('Search', _unreachable)})

    status = health_check.get_health_status()

    assert status['search'] == {'healthy': False, 'service': 'Search', 'error': 'endpoint unreachable'}
    assert health_check.check_health() is False
