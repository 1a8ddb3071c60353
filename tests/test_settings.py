"""
Tests for configuration loading (YAML + environment overrides)
"""
import textwrap

from config.settings import load_settings


def _yaml(tmp_path, content: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path):
        s = load_settings(str(tmp_path / "missing.yaml"), environ={})
        assert s.server.port == 4000
        assert s.queue.name == "whatsapp-jobs"
        assert s.worker.retry_delay == 5000
        assert s.bot.prefix == "!"

    def test_yaml_sections(self, tmp_path):
        path = _yaml(tmp_path, """
            app_name: Bridge
            server:
              port: 4100
            queue:
              name: bridge-jobs
              backend: memory
            bot:
              auto_reply_enabled: true
              unknown_key: ignored
        """)
        s = load_settings(path, environ={})
        assert s.app_name == "Bridge"
        assert s.server.port == 4100
        assert s.queue.backend == "memory"
        assert s.bot.auto_reply_enabled is True
        assert not hasattr(s.bot, "unknown_key")

    def test_env_substitution_in_yaml(self, tmp_path):
        path = _yaml(tmp_path, """
            webservice:
              api_token: ${TEST_WEBSERVICE_TOKEN}
              api_url: ${NOT_SET_ANYWHERE}
        """)
        s = load_settings(path, environ={"TEST_WEBSERVICE_TOKEN": "tok-123"})
        assert s.webservice.api_token == "tok-123"
        assert s.webservice.api_url == "${NOT_SET_ANYWHERE}"

    def test_substitution_uses_given_environ_only(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_WEBSERVICE_TOKEN", "from-process")
        path = _yaml(tmp_path, """
            webservice:
              api_token: ${TEST_WEBSERVICE_TOKEN}
        """)
        assert load_settings(path, environ={}).webservice.api_token == "${TEST_WEBSERVICE_TOKEN}"
        assert load_settings(path, environ={"TEST_WEBSERVICE_TOKEN": "given"}).webservice.api_token == "given"

    def test_env_overrides_win(self, tmp_path):
        path = _yaml(tmp_path, """
            server:
              port: 4100
        """)
        s = load_settings(path, environ={
            "PORT": "4200",
            "NODE_ENV": "production",
            "WORKER_CONCURRENCY": "8",
            "ALLOWED_ORIGINS": "https://a.test, https://b.test",
            "BOT_AUTO_REPLY_ENABLED": "TRUE",
        })
        assert s.server.port == 4200
        assert s.server.environment == "production"
        assert s.worker.concurrency == 8
        assert s.security.allowed_origins == ["https://a.test", "https://b.test"]
        assert s.bot.auto_reply_enabled is True

    def test_invalid_override_is_ignored(self, tmp_path):
        s = load_settings(str(tmp_path / "missing.yaml"), environ={"PORT": "not-a-port", "QUEUE_NAME": ""})
        assert s.server.port == 4000
        assert s.queue.name == "whatsapp-jobs"

    def test_redis_connection_url(self, tmp_path):
        s = load_settings(str(tmp_path / "missing.yaml"), environ={
            "REDIS_HOST": "cache", "REDIS_PORT": "6380", "REDIS_PASSWORD": "pw",
        })
        assert s.redis.connection_url == "redis://:pw@cache:6380/0"
        s.redis.url = "redis://elsewhere:1/2"
        assert s.redis.connection_url == "redis://elsewhere:1/2"

    def test_unconsumed_variables_are_not_loaded(self, tmp_path):
        s = load_settings(str(tmp_path / "missing.yaml"), environ={
            "API_SECRET_KEY": "k", "BOT_ADMIN_NUMBERS": "1555",
        })
        assert not hasattr(s.security, "api_secret_key")
        assert not hasattr(s.bot, "admin_numbers")
