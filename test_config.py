import logging
import pytest
import main
from config import Config, ConfigError


def test_defaults(config):
    assert config.DISCORD_CHANNEL_ID == 555
    assert config.POLL_INTERVAL_MS == 5000
    assert config.POLL_INTERVAL == 5.0
    assert config.LOG_LEVEL == logging.INFO
    assert config.AUTO_PURCHASE_ENABLED is True
    assert config.REDELIVER_UNDELIVERED is False
    assert config.BATCH_SIZE == 5
    assert 'test-token' not in config.describe()


@pytest.mark.parametrize('name', ['DISCORD_TOKEN', 'DISCORD_CHANNEL_ID'])
def test_required_values(env, name):
    env.setenv(name, '')

    with pytest.raises(ConfigError):
        Config()


def test_channel_id_must_be_numeric(env):
    env.setenv('DISCORD_CHANNEL_ID', 'general')

    with pytest.raises(ConfigError):
        Config()


@pytest.mark.parametrize('raw,expected', [('2500', 2500), ('999', 5000), ('soon', 5000), ('1000', 1000)])
def test_poll_interval_minimum(env, raw, expected):
    env.setenv('POLL_INTERVAL', raw)

    assert Config().POLL_INTERVAL_MS == expected


def test_log_level_and_flags(env):
    env.setenv('LOG_LEVEL', 'DEBUG')
    env.setenv('AUTO_PURCHASE_ENABLED', 'false')
    env.setenv('REDELIVER_UNDELIVERED', 'true')

    config = Config()

    assert config.LOG_LEVEL == logging.DEBUG
    assert config.AUTO_PURCHASE_ENABLED is False
    assert config.REDELIVER_UNDELIVERED is True


def test_invalid_log_level_falls_back(env):
    env.setenv('LOG_LEVEL', 'chatty')

    assert Config().LOG_LEVEL == logging.INFO


def test_batch_size_bounds(env):
    env.setenv('BATCH_SIZE', '6')

    with pytest.raises(ConfigError):
        Config()


@pytest.mark.parametrize('name', ['BATCH_DELAY', 'EDIT_DELAY', 'STATS_INTERVAL', 'API_TIMEOUT'])
@pytest.mark.parametrize('raw', ['slow', '-1'])
def test_bad_durations_are_config_errors(env, name, raw):
    env.setenv(name, raw)

    with pytest.raises(ConfigError, match=name):
        Config()


def test_durations_parse(env):
    env.setenv('BATCH_DELAY', '1.5')
    env.setenv('API_TIMEOUT', '3')

    config = Config()

    assert config.BATCH_DELAY == 1.5
    assert config.EDIT_DELAY == 0.0
    assert config.STATS_INTERVAL == 300.0
    assert config.API_TIMEOUT == 3.0


def test_main_reports_bad_duration(env, caplog):
    env.setenv('BATCH_DELAY', 'slow')

    assert main.main() == 1
    assert 'Invalid configuration' in caplog.text
