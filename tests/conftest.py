#!/usr/bin/env python3
# conftest.py - API Session Tools Pytest Configuration and Fixtures
# Version 1.0 - October 2026
# Shared fixtures for all test modules

import pytest
import os
import sys
import json
import tempfile
from unittest.mock import MagicMock, patch
from configparser import ConfigParser

# Add repository root and each script family directory to path for imports
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)
for family_dir in ('CyberArk', 'vCloud', 'vSphere', 'Utils'):
    sys.path.insert(0, os.path.join(parent_dir, family_dir))

import apifunctions as apf

#==============================================================================
# FIXTURES - File System
#==============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def protector(temp_dir):
    """SecretProtector keeping its key in a temporary credential directory"""
    return apf.SecretProtector(temp_dir)


@pytest.fixture(autouse=True)
def isolated_credential_dir(temp_dir, monkeypatch):
    """Never touch the real ~/.apicredentials"""
    monkeypatch.setattr(apf, 'credential_dir', temp_dir)
    yield temp_dir

#==============================================================================
# FIXTURES - Cache and Config
#==============================================================================

@pytest.fixture
def cache():
    """Empty VariableCache without a module config"""
    return apf.VariableCache()


@pytest.fixture
def mock_config():
    """Create a ConfigParser with module defaults"""
    config = ConfigParser()

    config.add_section('CyberArk')
    config.set('CyberArk', 'Server', 'pvwa.example.com')
    config.set('CyberArk', 'AuthMethod', 'LDAP')

    config.add_section('vCloud')
    config.set('vCloud', 'Server', '#vcd.example.com')
    config.set('vCloud', 'Org', 'acme')

    config.add_section('Utils')
    config.set('Utils', 'Proxy', 'http://proxy.example.com:3128')
    config.set('Utils', 'ProxyBypass', 'localhost, .internal.example.com')

    return config

#==============================================================================
# FIXTURES - Mock HTTP
#==============================================================================

def build_response(status_code=200, json_data=None, text=None, headers=None, reason='OK',
                   url='https://server.example.com/'):
    """MagicMock shaped like a requests.Response"""
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.url = url
    response.headers = headers or {}
    if json_data is not None:
        response.json.return_value = json_data
        response.text = text if text is not None else json.dumps(json_data)
    else:
        response.text = text or ''
        response.json.side_effect = ValueError('No JSON object could be decoded')
    return response


@pytest.fixture
def make_response():
    """Factory for fake requests.Response objects"""
    return build_response


@pytest.fixture
def mock_session():
    """Patch build_http_session so connectors get a MagicMock session"""
    session = MagicMock()
    with patch('apifunctions.build_http_session', return_value=session) as mock_build:
        session.build = mock_build
        yield session

#==============================================================================
# MARKERS
#==============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that require network access"
    )
