#!/usr/bin/env python3
# conftest.py - vditools Pytest Configuration and Fixtures
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Shared fixtures for all test modules

import pytest
import os
import sys
import shutil
from unittest.mock import MagicMock, patch
from configparser import ConfigParser

# Add parent directory and Tools directory to path for imports
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)
sys.path.insert(0, os.path.join(parent_dir, 'Tools'))

import smbclient
import smbclient.path
import smbclient.shutil

import vdifunctions as vdf

#==============================================================================
# FIXTURES - Module State
#==============================================================================

@pytest.fixture(autouse=True)
def isolated_vdf(tmp_path, monkeypatch):
    """Keep every test away from ~/vditools and from other tests' state"""
    monkeypatch.setattr(vdf, 'logfiles', [str(tmp_path / 'vditools.log')])
    monkeypatch.setattr(vdf, 'creds', str(tmp_path / 'creds.txt'))
    monkeypatch.setattr(vdf, 'configini', str(tmp_path / 'config.ini'))
    monkeypatch.setattr(vdf, 'config', ConfigParser())
    monkeypatch.setattr(vdf, '_password', None)
    monkeypatch.setattr(vdf, 'password', None)
    monkeypatch.setattr(vdf, 'smb_sessions', set())
    monkeypatch.setattr(vdf, 'console_output', False)
    yield


@pytest.fixture
def mock_config():
    """Create a ConfigParser with test values and install it in vdifunctions"""
    config = ConfigParser()

    config.add_section('VSPHERE')
    config.set('VSPHERE', 'vcenter', 'vc-01.corp.local')
    config.set('VSPHERE', 'role', 'Citrix MCS')

    config.add_section('WINDOWS')
    config.set('WINDOWS', 'user', 'svc-vditools')
    config.set('WINDOWS', 'domain', 'CORP')

    config.add_section('PVS')
    config.set('PVS', 'server', 'pvs-01.corp.local')
    config.set('PVS', 'modes', 'Production, Test')

    config.add_section('AUDIT')
    config.set('AUDIT', 'hosts', '\nddc-01.corp.local\n#ddc-02.corp.local\n;sf-01.corp.local\nsf-02.corp.local')
    config.set('AUDIT', 'account', '# svc-old')

    vdf.config = config
    return config


#==============================================================================
# FIXTURES - File System
#==============================================================================

@pytest.fixture
def local_smb(monkeypatch):
    """Route the smbclient calls the tools make to the local file system"""
    monkeypatch.setattr(smbclient.path, 'isfile', os.path.isfile)
    monkeypatch.setattr(smbclient.path, 'isdir', os.path.isdir)
    monkeypatch.setattr(smbclient.path, 'exists', os.path.exists)
    monkeypatch.setattr(smbclient, 'open_file', lambda path, mode='r', **kwargs: open(path, mode))
    monkeypatch.setattr(smbclient, 'stat', lambda path, **kwargs: os.stat(path))
    monkeypatch.setattr(smbclient, 'rename', lambda src, dst, **kwargs: os.rename(src, dst))
    monkeypatch.setattr(smbclient, 'remove', lambda path, **kwargs: os.remove(path))
    monkeypatch.setattr(smbclient, 'scandir', lambda path, **kwargs: os.scandir(path))
    monkeypatch.setattr(smbclient, 'makedirs',
                        lambda path, exist_ok=False, **kwargs: os.makedirs(path, exist_ok=exist_ok))
    monkeypatch.setattr(smbclient.shutil, 'copytree',
                        lambda src, dst, dirs_exist_ok=False, **kwargs:
                        shutil.copytree(src, dst, dirs_exist_ok=dirs_exist_ok))
    monkeypatch.setattr(smbclient.shutil, 'copy2', lambda src, dst, **kwargs: shutil.copy2(src, dst))
    yield


@pytest.fixture
def make_file():
    """Return a helper that creates a file (and its parent directories)"""
    def _make_file(path, content=b'x'):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(content)
        return path
    return _make_file


#==============================================================================
# FIXTURES - Mock Command Execution
#==============================================================================

@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for command execution tests"""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout='Success',
            stderr=''
        )
        yield mock_run


@pytest.fixture
def mock_psexec():
    """Mock the pypsexec Client used by vdifunctions"""
    with patch('vdifunctions.Client') as mock_client:
        instance = MagicMock()
        instance.run_executable.return_value = (b'ok\r\n', b'', 0)
        mock_client.return_value = instance
        yield mock_client


#==============================================================================
# FIXTURES - PVS Inventory
#==============================================================================

@pytest.fixture
def pvs_inventory():
    """Inventory as get_inventory() returns it: one site, three servers, two stores"""
    return {
        'Servers': [
            {'ServerName': 'PVS-01', 'SiteName': 'Site'},
            {'ServerName': 'PVS-02', 'SiteName': 'Site'},
            {'ServerName': 'PVS-03', 'SiteName': 'Site'},
        ],
        'Stores': [
            {'StoreName': 'Store', 'Path': r'D:\Store'},
            {'StoreName': 'Shared', 'Path': r'\\nas-01\pvs\Shared'},
        ],
        'ServerStores': [
            {'ServerName': 'PVS-02', 'StoreName': 'Store', 'Path': r'E:\vDisks'},
            {'ServerName': 'PVS-01', 'StoreName': 'Store', 'Path': ''},
            {'ServerName': 'PVS-01', 'StoreName': 'Shared', 'Path': ''},
            {'ServerName': 'PVS-02', 'StoreName': 'Shared', 'Path': ''},
        ],
        'Disks': [
            {'DiskLocatorId': 'a1', 'Name': 'Win11', 'StoreName': 'Store', 'SiteName': 'Site'},
            {'DiskLocatorId': 'b2', 'Name': 'Server2022', 'StoreName': 'Store', 'SiteName': 'Site'},
        ],
        'Versions': [
            {'DiskLocatorId': 'a1', 'Version': 2, 'Access': 1, 'DiskFileName': 'Win11.2.avhdx', 'DeleteWhenFree': False},
            {'DiskLocatorId': 'a1', 'Version': 0, 'Access': 0, 'DiskFileName': 'Win11.vhdx', 'DeleteWhenFree': False},
            {'DiskLocatorId': 'a1', 'Version': 1, 'Access': 0, 'DiskFileName': 'Win11.1.avhdx', 'DeleteWhenFree': False},
            {'DiskLocatorId': 'b2', 'Version': 3, 'Access': 0, 'DiskFileName': 'Server2022.3.vhdx', 'DeleteWhenFree': False},
            {'DiskLocatorId': 'b2', 'Version': 4, 'Access': 7, 'DiskFileName': 'Server2022.4.avhdx', 'DeleteWhenFree': False},
            {'DiskLocatorId': 'b2', 'Version': 2, 'Access': 0, 'DiskFileName': 'Server2022.2.avhdx', 'DeleteWhenFree': True},
        ],
    }

