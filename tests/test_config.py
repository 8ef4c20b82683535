import pytest

from parley.config import (
    AppConfig,
    AzureOpenAIProviderConfig,
    CliProviderConfig,
    OpenAIProviderConfig,
    load_config,
)
from parley.errors import ConfigError


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults():
    config = AppConfig()
    assert isinstance(config.provider, CliProviderConfig)
    assert config.provider.max_tool_rounds == 10
    assert config.provider.request_timeout == 120
    assert config.provider.stale_threshold < config.provider.idle_timeout
    assert config.bot.enabled is False


def test_load_with_env_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("PARLEY_TEST_KEY", "sk-from-env")
    path = _write(
        tmp_path,
        """
data_dir: /srv/parley
provider:
  provider: openai
  model: gpt-4o-mini
  api_key: ${PARLEY_TEST_KEY}
  max_tool_rounds: 3
storage:
  db_path: ${data_dir}/chat.db
""",
    )
    config = load_config(path, tmp_path / "missing.env")

    assert isinstance(config.provider, OpenAIProviderConfig)
    assert config.provider.api_key == "sk-from-env"
    assert config.provider.max_tool_rounds == 3
    assert config.storage.db_path == "/srv/parley/chat.db"


def test_dotenv_file_is_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("PARLEY_AZURE_KEY", raising=False)
    env = tmp_path / ".env"
    env.write_text("PARLEY_AZURE_KEY=az-123\n", encoding="utf-8")
    path = _write(
        tmp_path,
        """
provider:
  provider: azure-openai
  api_key: ${PARLEY_AZURE_KEY}
  endpoint: https://x.openai.azure.com
  deployment_name: gpt4o
""",
    )
    config = load_config(path, env)
    assert isinstance(config.provider, AzureOpenAIProviderConfig)
    assert config.provider.api_key == "az-123"
    assert config.provider.api_version == "2024-08-01-preview"
    monkeypatch.delenv("PARLEY_AZURE_KEY", raising=False)


def test_unset_variables_are_left_verbatim(tmp_path, monkeypatch):
    monkeypatch.delenv("PARLEY_UNSET", raising=False)
    path = _write(tmp_path, "provider:\n  provider: cli\n  system_prompt: ${PARLEY_UNSET}\n")
    assert load_config(path, tmp_path / "none.env").provider.system_prompt == "${PARLEY_UNSET}"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", tmp_path / "none.env")


@pytest.mark.parametrize(
    "body",
    [
        "provider:\n  provider: cli\n  stale_threshold: 1800\n  idle_timeout: 1800\n",
        "provider:\n  provider: openai\n  max_tool_rounds: 0\n",
        "provider:\n  provider: gemini\n",
        "session:\n  max_messages: 1\n",
    ],
)
def test_invalid_config(tmp_path, body):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, body), tmp_path / "none.env")
