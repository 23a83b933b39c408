import importlib


def test_sanitize_config_coerces_numbers_and_clamps():
    cfgmod = importlib.import_module('core.config')
    raw = {
        'general': {
            'batch_size': '0',
            'request_timeout': '45',
            'metrics_concurrency': 'lots',
            'dry_run': 'yes',
            'snapshot_retention_days': '14',
        },
    }
    out = cfgmod.sanitize_config(raw, debug_logging=False)
    gen = out['general']
    assert gen['batch_size'] == 1
    assert gen['request_timeout'] == 45.0
    assert gen['metrics_concurrency'] == 10
    assert gen['dry_run'] is True
    assert gen['snapshot_retention_days'] == 14.0


def test_sanitize_config_non_dict_returns_empty():
    cfgmod = importlib.import_module('core.config')
    assert cfgmod.sanitize_config(None) == {}


def test_yaml_general_overrides_environment(monkeypatch, tmp_path):
    cfgmod = importlib.import_module('core.config')
    cfg_path = tmp_path / 'config.yaml'
    cfg_path.write_text('general:\n  batch_size: 3\n  database_path: /tmp/x.db\n')
    monkeypatch.setenv('AUTOMATION_BATCH_SIZE', '8')
    monkeypatch.setenv('METRICS_CONCURRENCY', '4')
    monkeypatch.delenv('DATABASE_PATH', raising=False)

    settings = cfgmod.load_settings(str(cfg_path))
    assert settings.batch_size == 3
    assert settings.metrics_concurrency == 4
    assert settings.database_path == '/tmp/x.db'


def test_load_settings_defaults(monkeypatch, tmp_path):
    cfgmod = importlib.import_module('core.config')
    for env_key, _, _ in cfgmod.SETTINGS_TABLE.values():
        monkeypatch.delenv(env_key, raising=False)
    settings = cfgmod.load_settings(str(tmp_path / 'missing.yaml'))
    assert settings.api_base == 'https://api.torbox.app'
    assert settings.api_version == 'v1'
    assert settings.request_timeout == 30
    assert settings.snapshot_retention_days == 30
    assert settings.batch_size == 5
    assert settings.metrics_concurrency == 10
    assert settings.automation_interval_seconds == 300
    assert settings.cleanup_interval_hours == 24
    assert settings.database_path == '/app/data/automation.db'
    assert settings.dry_run is False
    assert settings.structured_logs is True


def test_validate_config_warns_but_never_raises(caplog):
    cfgmod = importlib.import_module('core.config')
    cfg = {'general': {'min_request_interval_ms': 100, 'max_concurrent_requests': 0, 'bogus': 1}}
    cfgmod.validate_config(cfg)
    assert any('bogus' in r.message for r in caplog.records)
    assert any('min_request_interval_ms' in r.message for r in caplog.records)


def test_malformed_yaml_is_ignored(tmp_path):
    cfgmod = importlib.import_module('core.config')
    cfg_path = tmp_path / 'config.yaml'
    cfg_path.write_text('general: [unclosed\n')
    assert cfgmod.load_yaml(str(cfg_path)) == {}
