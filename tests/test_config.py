"""
配置加载测试

测试 YAML 加载、环境变量替换、默认值合并和设置校验。
"""

import pytest

from radio_analytics.config import (
    DEFAULT_CONFIG,
    AnalyticsSettings,
    _deep_merge,
    apply_defaults,
    get_config_value,
    load_config,
    load_config_with_defaults,
    replace_env_vars,
)
from radio_analytics.stats.errors import ConfigurationError


@pytest.fixture
def config_file(tmp_path):
    def write(content: str) -> str:
        path = tmp_path / 'config.yaml'
        path.write_text(content, encoding='utf-8')
        return str(path)
    return write


class TestReplaceEnvVars:
    """测试环境变量替换"""

    def test_replaces_set_variable(self, monkeypatch):
        """测试替换已设置的变量"""
        monkeypatch.setenv('ADMIN_TOKEN', 'abc')
        assert replace_env_vars('${ADMIN_TOKEN}') == 'abc'

    def test_uses_default_when_unset(self, monkeypatch):
        """测试未设置时使用默认值"""
        monkeypatch.delenv('LOG_LEVEL', raising=False)
        assert replace_env_vars('${LOG_LEVEL:INFO}') == 'INFO'

    def test_unset_without_default_is_empty(self, monkeypatch):
        """测试未设置且无默认值时替换为空字符串"""
        monkeypatch.delenv('ADMIN_TOKEN', raising=False)
        assert replace_env_vars('${ADMIN_TOKEN:}') == ''
        assert replace_env_vars('${ADMIN_TOKEN}') == ''

    def test_recurses_into_containers(self, monkeypatch):
        """测试递归处理字典和列表"""
        monkeypatch.setenv('TZ_NAME', 'UTC')
        assert replace_env_vars({'a': ['${TZ_NAME}', 1], 'b': {'c': '${TZ_NAME}'}}) == {
            'a': ['UTC', 1], 'b': {'c': 'UTC'}
        }


class TestLoadConfig:
    """测试配置文件加载"""

    def test_missing_file(self, tmp_path):
        """测试配置文件不存在"""
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / 'missing.yaml'))

    def test_empty_file(self, config_file):
        """测试空配置文件"""
        assert load_config(config_file('')) == {}

    def test_loads_env_file(self, config_file, tmp_path, monkeypatch):
        """测试从 .env 文件读取变量"""
        monkeypatch.delenv('RADIO_TEST_TOKEN', raising=False)
        env_path = tmp_path / '.env'
        env_path.write_text('RADIO_TEST_TOKEN=from-dotenv\n', encoding='utf-8')

        config = load_config(config_file('admin:\n  token: ${RADIO_TEST_TOKEN:}\n'), str(env_path))

        assert config['admin']['token'] == 'from-dotenv'
        monkeypatch.delenv('RADIO_TEST_TOKEN', raising=False)

    def test_with_defaults(self, config_file):
        """测试合并默认值"""
        config = load_config_with_defaults(config_file('server:\n  port: 8080\n'))

        assert config['server']['port'] == 8080
        assert config['server']['host'] == '0.0.0.0'
        assert config['analytics']['stale_after_seconds'] == 150


class TestHelpers:
    """测试辅助函数"""

    def test_get_config_value(self):
        """测试点分隔路径取值"""
        assert get_config_value({'a': {'b': 1}}, 'a.b') == 1
        assert get_config_value({'a': {'b': 1}}, 'a.c', 'x') == 'x'

    def test_deep_merge_does_not_mutate_defaults(self):
        """测试合并不修改默认配置"""
        merged = _deep_merge(DEFAULT_CONFIG, {'reaper': {'interval_minutes': 1}})

        assert merged['reaper']['interval_minutes'] == 1
        assert DEFAULT_CONFIG['reaper']['interval_minutes'] == 5

    def test_apply_defaults_to_empty(self):
        """测试空配置得到完整默认值"""
        assert apply_defaults({}) == DEFAULT_CONFIG


class TestAnalyticsSettings:
    """测试设置构建与校验"""

    def test_defaults_are_valid(self):
        """测试默认设置有效"""
        settings = AnalyticsSettings.from_config(apply_defaults({}))

        assert settings.timezone == 'Europe/Bucharest'
        assert settings.stale_after_seconds == 150
        assert settings.aggregation_time == '00:05'
        assert settings.port == 3001
        assert settings.admin_token == ''

    def test_string_values_are_coerced(self):
        """测试字符串数值被转换"""
        settings = AnalyticsSettings.from_config(apply_defaults({
            'server': {'port': '8080'},
            'aggregation': {'time': '1:30'},
            'logging': {'level': 'debug'},
        }))

        assert settings.port == 8080
        assert settings.aggregation_time == '01:30'
        assert settings.log_level == 'DEBUG'

    def test_stale_threshold_must_exceed_heartbeat(self):
        """测试过期阈值必须大于心跳间隔"""
        with pytest.raises(ConfigurationError):
            AnalyticsSettings.from_config(apply_defaults({
                'analytics': {'heartbeat_interval_seconds': 30, 'stale_after_seconds': 30}
            }))

    @pytest.mark.parametrize('override', [
        {'analytics': {'timezone': 'Mars/Olympus'}},
        {'aggregation': {'time': '25:00'}},
        {'server': {'port': 'http'}},
        {'server': {'port': 70000}},
        {'reaper': {'interval_minutes': 0}},
        {'database': {'path': ':memory:'}},
        {'logging': {'level': 'LOUD'}},
        {'aggregation': {'time': '00:02'}},
        {'aggregation': {'time': '00:05'}, 'analytics': {'stale_after_seconds': 600}},
    ])
    def test_rejects_invalid_values(self, override):
        """测试拒绝无效设置"""
        with pytest.raises(ConfigurationError):
            AnalyticsSettings.from_config(apply_defaults(override))

    def test_aggregation_time_after_staleness_threshold(self):
        """测试聚合时间刚好等于过期阈值时有效"""
        settings = AnalyticsSettings.from_config(apply_defaults({
            'aggregation': {'time': '00:10'},
            'analytics': {'stale_after_seconds': 600},
        }))

        assert settings.aggregation_time == '00:10'
