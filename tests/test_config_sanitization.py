import importlib


def test_sanitize_config_coerces_numbers_and_filters_services():
    cfgmod = importlib.import_module('core.config')
    raw = {
        'engine': {
            'action_retry_attempts': '0',
            'action_retry_backoff': '1.5',
            'action_timeout_seconds': 'soon',
            'max_concurrent_requests': '-2',
        },
        'services': {
            'Radarr': {'type': 'radarr', 'max_concurrent_requests': '2'},
            'Tautulli': {'library_ids': 3},
            'Lidarr': {'type': 'lidarr'},
            'Broken': 'not-a-dict',
        },
    }
    out = cfgmod.sanitize_config(raw, debug_logging=False)
    eng = out['engine']
    assert eng['action_retry_attempts'] == 1
    assert eng['action_retry_backoff'] == 1.5
    assert eng['action_timeout_seconds'] == 60.0
    assert eng['max_concurrent_requests'] == 0
    assert set(out['services']) == {'Radarr', 'Tautulli'}
    assert out['services']['Radarr']['max_concurrent_requests'] == 2
    assert out['services']['Tautulli']['type'] == 'tautulli'
    assert out['services']['Tautulli']['library_ids'] == [3]


def test_service_definition_reads_endpoints_from_env(monkeypatch):
    cfgmod = importlib.import_module('core.config')
    monkeypatch.setenv('RADARR4K_URL', 'http://radarr4k:7878/api/v3/')
    monkeypatch.setenv('RADARR4K_API_KEY', 'secret')
    ac = cfgmod.ConfigAccessor({'services': {'Radarr4K': {'type': 'radarr', 'active': True, 'library_ids': [1, '2']}}})
    assert ac.service_definition('Radarr4K') == {
        'name': 'Radarr4K',
        'kind': 'radarr',
        'api_url': 'http://radarr4k:7878/api/v3',
        'api_key': 'secret',
        'active': True,
        'library_ids': ['1', '2'],
    }


def test_service_setting_precedence():
    cfgmod = importlib.import_module('core.config')
    ac = cfgmod.ConfigAccessor({
        'engine': {'max_concurrent_requests': 4},
        'services': {'Sonarr': {'max_concurrent_requests': 1}},
    })
    assert ac.get_service_setting('Sonarr', 'max_concurrent_requests') == 1
    assert ac.get_service_setting('Radarr', 'max_concurrent_requests') == 4
    assert ac.engine('action_retry_attempts') == 3
    assert ac.engine('unknown', 'fallback') == 'fallback'


def test_validate_config_reports_problems(monkeypatch):
    cfgmod = importlib.import_module('core.config')
    monkeypatch.setenv('RADARR_URL', 'http://radarr/api/v3')
    monkeypatch.delenv('RADARR_API_KEY', raising=False)
    monkeypatch.delenv('SONARR_URL', raising=False)
    monkeypatch.delenv('SONARR_API_KEY', raising=False)
    problems = cfgmod.validate_config({
        'engine': {'min_request_interval_ms': 100},
        'services': {'Radarr': {'type': 'radarr'}, 'Sonarr': {'type': 'sonarr'}},
    })
    text = '\n'.join(problems)
    assert 'Radarr has partial env config' in text
    assert 'SONARR_URL' in text
    assert 'No tautulli service' in text
    assert 'min_request_interval_ms' in text


def test_load_yaml_tolerates_missing_and_invalid(tmp_path):
    cfgmod = importlib.import_module('core.config')
    assert cfgmod.load_yaml(str(tmp_path / 'nope.yaml')) == {}
    bad = tmp_path / 'bad.yaml'
    bad.write_text('services: [unclosed\n')
    assert cfgmod.load_yaml(str(bad)) == {}
    good = tmp_path / 'config.yaml'
    good.write_text('general:\n  dry_run: true\nservices:\n  Radarr:\n    type: radarr\n')
    assert cfgmod.load_yaml(str(good))['general'] == {'dry_run': True}
