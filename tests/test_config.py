import json

import pytest

from sbaudit.config import (
    ConfigurationError, DEFAULT_SENSITIVE_REGEX, config_from_mapping, load_config, validate_config
)

from conftest import ANON_KEY, BASE_URL, make_config


def test_minimal_config_with_discovery_is_valid():
    config = make_config(discover=True)
    assert validate_config(config) is True
    assert config.probe.sleep_ms == 0
    assert config.probe.sensitive_regex == DEFAULT_SENSITIVE_REGEX


def test_missing_shared_key_is_rejected():
    config = make_config(anon_key='', discover=True)
    with pytest.raises(ConfigurationError, match="SUPABASE_ANON_KEY"):
        validate_config(config)


def test_missing_target_source_is_rejected():
    with pytest.raises(ConfigurationError, match="--auto-tables"):
        validate_config(make_config())


def test_all_errors_are_reported_together():
    config = make_config(url='', anon_key='')
    with pytest.raises(ConfigurationError) as excinfo:
        validate_config(config)
    message = str(excinfo.value)
    assert "SUPABASE_URL" in message
    assert "SUPABASE_ANON_KEY" in message
    assert "--auto-tables" in message


@pytest.mark.parametrize("value", ["abc", "-5", "1.5", True])
def test_malformed_sleep_is_a_configuration_error(value):
    with pytest.raises(ConfigurationError, match="sleep_ms"):
        make_config(discover=True, sleep_ms=value)


def test_sleep_string_is_coerced():
    assert make_config(discover=True, sleep_ms="200").probe.sleep_ms == 200


def test_invalid_regex_is_rejected():
    config = make_config(discover=True, sensitive_regex="(unclosed")
    with pytest.raises(ConfigurationError, match="sensitive regex"):
        validate_config(config)


def test_missing_tables_file_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError, match="tables file must exist"):
        make_config(tables_file=str(tmp_path / "missing.txt"))


def test_tables_file_is_read(tmp_path):
    tables = tmp_path / "tables.txt"
    tables.write_text("users\norders # legacy\n\n")
    config = make_config(tables_file=str(tables))
    assert config.allowlist == ("users", "orders # legacy", "")
    assert validate_config(config)


def test_config_is_immutable():
    config = make_config(discover=True)
    with pytest.raises(AttributeError):
        config.url = "https://other.example"


def test_rpc_probe_implies_discovery():
    config = make_config(allowlist=["users"], rpc_probe=True)
    assert config.features.discovery_enabled
    assert not config.features.discover


def test_options_snapshot_never_contains_secrets():
    config = make_config(discover=True, user_jwt="secret-user-jwt", mutation_probe=True)
    snapshot = config.options_snapshot()
    assert snapshot['user_jwt_provided'] == 'yes'
    assert snapshot['auto_tables'] is True
    assert snapshot['strict_mode'] is False
    assert 'discover' not in snapshot and 'strict' not in snapshot
    assert 'mutation_filter' in snapshot
    assert ANON_KEY not in json.dumps(snapshot)
    assert "secret-user-jwt" not in json.dumps(snapshot)


def test_options_snapshot_without_user_token():
    assert make_config(discover=True).options_snapshot()['user_jwt_provided'] == 'no'


def test_profile_string_flags_are_read_literally(tmp_path):
    profile = tmp_path / "audit.json"
    profile.write_text(json.dumps({
        'url': BASE_URL, 'anon_key': ANON_KEY,
        'features': {'discover': True, 'strict': "false",
                     'mutation_probe': "false", 'create_probe': "False", 'noauth_probe': "true"}
    }))

    config = load_config(str(profile))

    assert config.features.strict is False
    assert config.features.mutation_probe is False
    assert config.features.create_probe is False
    assert config.features.noauth_probe is True


@pytest.mark.parametrize("value", ["no", "0", 1, 0, None, [], "yes please"])
def test_non_boolean_flags_are_rejected(value):
    with pytest.raises(ConfigurationError, match="mutation_probe must be true or false"):
        config_from_mapping({'url': BASE_URL, 'anon_key': ANON_KEY,
                             'features': {'mutation_probe': value}})


@pytest.mark.parametrize("field,value,expected", [
    ('timeout_seconds', "10", 10.0),
    ('timeout_seconds', 2, 2.0),
    ('max_concurrent', "4", 4),
    ('sample_rows', "5", 5),
    ('max_runtime_seconds', "30.5", 30.5),
])
def test_numeric_profile_strings_are_coerced(field, value, expected):
    config = make_config(discover=True, probe={field: value})
    assert getattr(config.probe, field) == expected
    assert validate_config(config) is True


@pytest.mark.parametrize("field,value", [
    ('timeout_seconds', "soon"),
    ('timeout_seconds', True),
    ('max_concurrent', "2.5"),
    ('max_concurrent', [2]),
    ('sample_rows', "many"),
    ('max_runtime_seconds', {}),
])
def test_malformed_numbers_are_configuration_errors(field, value):
    with pytest.raises(ConfigurationError, match=field):
        make_config(discover=True, probe={field: value})


def test_non_string_regex_is_a_configuration_error():
    with pytest.raises(ConfigurationError, match="sensitive_regex must be a string"):
        make_config(discover=True, probe={'sensitive_regex': 42})


def test_unparseable_mutation_filter_is_rejected():
    config = make_config(discover=True, mutation_probe=True, mutation_filter="id=eq.0&broken")
    with pytest.raises(ConfigurationError, match="--mutation-filter must look like"):
        validate_config(config)


def test_conjunctive_mutation_filter_is_accepted():
    config = make_config(discover=True, mutation_probe=True, mutation_filter="id=eq.0&tenant_id=eq.0")
    assert validate_config(config) is True


def test_load_config_from_profile_with_overrides(tmp_path):
    profile = tmp_path / "audit.json"
    profile.write_text(json.dumps({
        'url': BASE_URL + '/',
        'anon_key': ANON_KEY,
        'features': {'discover': True, 'auth_matrix': True},
        'probe': {'sleep_ms': 50, 'max_concurrent': 2}
    }))

    config = load_config(str(profile), {'sleep_ms': '10', 'strict': True})

    assert config.url == BASE_URL
    assert config.features.auth_matrix
    assert config.features.strict
    assert config.probe.sleep_ms == 10
    assert config.probe.max_concurrent == 2


def test_load_config_rejects_bad_json(tmp_path):
    profile = tmp_path / "audit.json"
    profile.write_text("{not json")
    with pytest.raises(ConfigurationError, match="Invalid JSON"):
        load_config(str(profile))


def test_unknown_probe_field_is_rejected():
    with pytest.raises(ConfigurationError, match="Unknown configuration field"):
        config_from_mapping({'url': BASE_URL, 'anon_key': ANON_KEY, 'probe': {'bogus': 1}})
