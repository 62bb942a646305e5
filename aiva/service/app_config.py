from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from azure.appconfiguration import AzureAppConfigurationClient
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential

from aiva.config import Settings
from aiva.logging import get_logger
from aiva.service.errors import DependencyError, NotFoundError

logger = get_logger(__name__)


class ConfigurationClient(Protocol):
    is_mock: bool

    def get_setting(self, key: str, label: Optional[str] = None) -> Dict[str, Any]: ...

    def list_settings(self, key_filter: Optional[str] = None) -> List[Dict[str, Any]]: ...


def _setting_to_dict(setting: Any) -> Dict[str, Any]:
    return {
        "key": setting.key,
        "value": setting.value,
        "label": setting.label,
        "contentType": setting.content_type,
    }


class AzureAppConfig:
    is_mock = False

    def __init__(self, client: AzureAppConfigurationClient) -> None:
        self.client = client

    def get_setting(self, key: str, label: Optional[str] = None) -> Dict[str, Any]:
        try:
            setting = self.client.get_configuration_setting(key=key, label=label)
        except ResourceNotFoundError as exc:
            raise NotFoundError("Configuration setting not found", detail={"key": key}) from exc
        except AzureError as exc:
            logger.error("app_config_get_failed", key=key, error=str(exc))
            raise DependencyError("App Configuration request failed") from exc
        return _setting_to_dict(setting)

    def list_settings(self, key_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            settings = self.client.list_configuration_settings(key_filter=key_filter)
            return [_setting_to_dict(s) for s in settings]
        except AzureError as exc:
            logger.error("app_config_list_failed", error=str(exc))
            raise DependencyError("App Configuration request failed") from exc


class MockAppConfig:
    """Static stand-in returned when App Configuration is disabled or unreachable."""

    is_mock = True

    def get_setting(self, key: str, label: Optional[str] = None) -> Dict[str, Any]:
        return {
            "key": key or "mock-key",
            "value": "mock-value",
            "label": label or "mock-label",
            "contentType": "application/json",
        }

    def list_settings(self, key_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        return [self.get_setting("mock-key")]


def build_app_config(settings: Settings) -> ConfigurationClient:
    if settings.mock_app_config:
        logger.info("app_config_mock_enabled", reason="MOCK_APP_CONFIG")
        return MockAppConfig()
    if not settings.azure_app_config_connection_string and not settings.azure_app_config_endpoint:
        logger.warning("app_config_mock_enabled", reason="not_configured")
        return MockAppConfig()
    try:
        if settings.azure_app_config_connection_string:
            client = AzureAppConfigurationClient.from_connection_string(
                settings.azure_app_config_connection_string
            )
        else:
            client = AzureAppConfigurationClient(
                base_url=settings.azure_app_config_endpoint,
                credential=DefaultAzureCredential(),
            )
        logger.info("app_config_initialized")
        return AzureAppConfig(client)
    except Exception as exc:
        logger.warning(
            "app_config_mock_enabled",
            reason="init_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return MockAppConfig()
