"""
Pytest configuration and shared fixtures
"""
import os
import sys
from pathlib import Path

import pytest
from unittest.mock import MagicMock

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import paho.mqtt.client as mqtt  # noqa: E402

TLS_DIR = Path(__file__).parent / 'fixtures' / 'tls'


@pytest.fixture
def tls_dir():
    return TLS_DIR


@pytest.fixture
def write_env(tmp_path):
    """Write a .env file from a dict and return its path"""
    def _write(values, name='.env'):
        path = tmp_path / name
        path.write_text(''.join(f'{k}={v}\n' for k, v in values.items()))
        return path
    return _write


@pytest.fixture
def fake_paho_client():
    """Create a controllable stand-in for the paho client"""
    client = MagicMock()
    client.connect.return_value = mqtt.MQTT_ERR_SUCCESS
    client.disconnect.return_value = mqtt.MQTT_ERR_SUCCESS
    client.loop_stop.return_value = mqtt.MQTT_ERR_SUCCESS
    return client
