from unittest.mock import MagicMock

import pytest

from deckq.configuration_service import QueueConfiguration, QueueConfigurationService


def test_create_sets_cache_and_storage():
    storage = MagicMock()
    service = QueueConfigurationService(storage)
    assert service.storage is storage
    assert len(service.local_cache) == 0


def test_edit_none_does_nothing():
    storage = MagicMock()
    service = QueueConfigurationService(storage)
    assert service.edit_queue_configuration(None) is None
    storage.edit_queue_configuration.assert_not_called()


def test_edit_zero_max_elements_does_nothing():
    storage = MagicMock()
    service = QueueConfigurationService(storage)
    service.edit_queue_configuration(QueueConfiguration(max_elements=0))
    assert storage.edit_queue_configuration.call_count == 0


def test_edit_cache_miss_calls_storage():
    storage = MagicMock()
    config = QueueConfiguration(queue="q1", max_elements=321)
    service = QueueConfigurationService(storage)
    service.edit_queue_configuration(config)
    storage.edit_queue_configuration.assert_called_once_with(config)


def test_edit_cache_hit_same_config_does_nothing():
    storage = MagicMock()
    config = QueueConfiguration(queue="q1", max_elements=321)
    service = QueueConfigurationService(storage)
    service.local_cache["q1"] = config
    service.edit_queue_configuration(config)
    assert storage.edit_queue_configuration.call_count == 0
    assert service.local_cache["q1"] is config


def test_edit_cache_hit_different_config_calls_storage_and_drops_cache():
    storage = MagicMock()
    config = QueueConfiguration(queue="q1", max_elements=321)
    service = QueueConfigurationService(storage)
    service.local_cache["q1"] = QueueConfiguration(queue="q1", max_elements=123)
    service.edit_queue_configuration(config)
    storage.edit_queue_configuration.assert_called_once_with(config)
    assert "q1" not in service.local_cache


def test_get_from_cache():
    storage = MagicMock()
    config = QueueConfiguration(queue="q1", max_elements=321)
    service = QueueConfigurationService(storage)
    service.local_cache["q1"] = config
    assert service.get_queue_configuration("q1") is config
    storage.get_queue_configuration.assert_not_called()


def test_get_cache_miss_storage_error_raises():
    storage = MagicMock()
    storage.get_queue_configuration.side_effect = RuntimeError("anyerr")
    service = QueueConfigurationService(storage)
    with pytest.raises(RuntimeError, match="anyerr"):
        service.get_queue_configuration("q1")
    assert "q1" not in service.local_cache


def test_get_cache_miss_storage_not_found_returns_default_and_caches():
    storage = MagicMock()
    storage.get_queue_configuration.return_value = None
    service = QueueConfigurationService(storage)
    assert "q1" not in service.local_cache
    result = service.get_queue_configuration("q1")
    assert result == QueueConfiguration(queue="q1")
    assert service.local_cache["q1"] is result


def test_get_cache_miss_storage_found_returns_and_caches():
    storage = MagicMock()
    stored = QueueConfiguration(queue="q1", max_elements=534)
    storage.get_queue_configuration.return_value = stored
    service = QueueConfigurationService(storage)
    result = service.get_queue_configuration("q1")
    assert result is stored
    assert service.local_cache["q1"] is result
    storage.get_queue_configuration.assert_called_once_with("q1")