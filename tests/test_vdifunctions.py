#!/usr/bin/env python3
# test_vdifunctions.py - vditools vdifunctions.py Unit Tests
# Version 1.0 - October 2026
# Author - VDI Operations Team

import pytest
import base64
import os
import subprocess
from unittest.mock import MagicMock, patch

import vdifunctions as vdf


class TestConfigHelpers:
    """Test get_config_list and get_config_value"""

    def test_multiline_list_skips_comments(self, mock_config):
        """Commented lines in a multiline value are ignored"""
        assert vdf.get_config_list('AUDIT', 'hosts') == ['ddc-01.corp.local', 'sf-02.corp.local']

    def test_comma_list(self, mock_config):
        """Single-line values split on commas"""
        assert vdf.get_config_list('PVS', 'modes') == ['Production', 'Test']

    def test_list_fallback(self, mock_config):
        """Missing options return the fallback"""
        assert vdf.get_config_list('PVS', 'stores') == []
        assert vdf.get_config_list('NOPE', 'x', ['a']) == ['a']

    def test_commented_value_is_unset(self, mock_config):
        """A value starting with # counts as not set"""
        assert vdf.get_config_value('AUDIT', 'account', 'fallback') == 'fallback'

    def test_value(self, mock_config):
        assert vdf.get_config_value('PVS', 'server') == 'pvs-01.corp.local'

    def test_init_reads_config_and_creds(self, tmp_path, monkeypatch):
        """init() loads config.ini, creds.txt and the log file override"""
        config_path = tmp_path / 'alt.ini'
        config_path.write_text('[LOGGING]\nlogfile = %s\n[PVS]\nserver = pvs-09\n'
                               % (tmp_path / 'alt.log'))
        (tmp_path / 'creds.txt').write_text('Secret1!\nignored\n')

        vdf.init(configfile=str(config_path))

        assert vdf.get_config_value('PVS', 'server') == 'pvs-09'
        assert vdf.get_password() == 'Secret1!'
        assert vdf.logfiles == [str(tmp_path / 'alt.log')]


class TestCredentials:
    """Test password and user helpers"""

    def test_get_password_missing_creds(self):
        assert vdf.get_password() == ''

    def test_set_credentials_overrides(self, mock_config):
        vdf.set_credentials('other', 'pw2')
        assert vdf.get_password() == 'pw2'
        assert vdf.get_windows_user() == 'CORP\\other'

    def test_windows_user_with_domain(self, mock_config):
        assert vdf.get_windows_user() == 'CORP\\svc-vditools'

    def test_windows_user_upn_not_prefixed(self, mock_config):
        vdf.set_credentials('svc@corp.local')
        assert vdf.get_windows_user() == 'svc@corp.local'

    def test_windows_user_default(self):
        assert vdf.get_windows_user() == 'Administrator'


class TestOutput:
    """Test write_output and formatting helpers"""

    def test_write_output_appends_timestamped_line(self, tmp_path):
        log = tmp_path / 'out.log'
        vdf.write_output('hello', logfile=str(log))
        vdf.write_output('again', logfile=str(log))
        lines = log.read_text().splitlines()
        assert len(lines) == 2
        assert lines[0].startswith('[') and lines[0].endswith('] hello')

    def test_write_output_console(self, capsys):
        vdf.write_output('shown', console=True)
        assert 'shown' in capsys.readouterr().out

    def test_write_table(self, tmp_path):
        table = vdf.make_table(['A', 'B'])
        table.add_row(['1', '2'])
        vdf.write_table(table)
        content = open(vdf.logfiles[0]).read()
        assert '| A ' in content
        assert '| 1 ' in content

    @pytest.mark.parametrize('num,expected', [
        (0, '0 B'),
        (1023, '1023 B'),
        (1536, '1.5 KB'),
        (5 * 1024 ** 3, '5.0 GB'),
        (3 * 1024 ** 4, '3.0 TB'),
    ])
    def test_format_bytes(self, num, expected):
        assert vdf.format_bytes(num) == expected

    def test_positive_int(self):
        assert vdf.positive_int(' 16 ') == 16
        assert vdf.positive_int(443) == 443

    @pytest.mark.parametrize('value', ['0', '-8', 'eight', '', '1.5'])
    def test_positive_int_rejects(self, value):
        with pytest.raises(ValueError):
            vdf.positive_int(value)


class TestSelection:
    """Test menu parsing and prompts"""

    def test_parse_selection_list_and_range(self):
        assert vdf.parse_selection('1, 3-4', 5) == [0, 2, 3]

    def test_parse_selection_reversed_range(self):
        assert vdf.parse_selection('4-2', 5) == [1, 2, 3]

    def test_parse_selection_all(self):
        assert vdf.parse_selection('ALL', 3) == [0, 1, 2]

    @pytest.mark.parametrize('text', ['0', '6', 'x', '', '1-9'])
    def test_parse_selection_invalid(self, text):
        with pytest.raises(ValueError):
            vdf.parse_selection(text, 5)

    def test_choose_from_list_retries(self, capsys):
        with patch('builtins.input', side_effect=['9', '1,2', '2']):
            assert vdf.choose_from_list(['a', 'b'], 'pick', multiple=False) == [1]

    @pytest.mark.parametrize('answer,expected', [('y', True), ('YES', True), ('n', False), ('', False)])
    def test_confirm(self, answer, expected):
        with patch('builtins.input', return_value=answer):
            assert vdf.confirm('Go?') is expected

    def test_confirm_assume_yes_does_not_prompt(self):
        with patch('builtins.input') as mock_input:
            assert vdf.confirm('Go?', assume_yes=True) is True
            mock_input.assert_not_called()

    def test_match_any(self):
        assert vdf.match_any('Win11-Prod', ['win11*'])
        assert not vdf.match_any('Server2022', ['win11*'])
        assert vdf.match_any('anything', [])


class TestCommandExecution:
    """Test local and remote command helpers"""

    def test_run_command_timeout(self, mock_subprocess):
        mock_subprocess.side_effect = subprocess.TimeoutExpired('x', 1)
        result = vdf.run_command('sleep 10')
        assert result.returncode == 1
        assert result.stderr == 'Timeout'

    def test_run_command_missing_executable(self, mock_subprocess):
        mock_subprocess.side_effect = FileNotFoundError('powershell.exe')
        result = vdf.run_command(['powershell.exe'])
        assert result.returncode == 1

    def test_encode_powershell(self):
        encoded = vdf.encode_powershell('Get-Date')
        assert base64.b64decode(encoded).decode('utf-16-le') == 'Get-Date'

    def test_run_powershell_local(self, mock_subprocess):
        vdf.run_powershell('Get-Date')
        cmd = mock_subprocess.call_args[0][0]
        assert cmd[0] == 'powershell.exe'
        assert cmd[-2] == '-EncodedCommand'
        assert mock_subprocess.call_args[1]['shell'] is False

    def test_runwincmd_remote(self, mock_config, mock_psexec):
        vdf.set_credentials(pw='pw')
        result = vdf.runwincmd('hostname', 'ddc-01')

        mock_psexec.assert_called_once_with('ddc-01', username='CORP\\svc-vditools',
                                            password='pw', encrypt=True)
        client = mock_psexec.return_value
        client.run_executable.assert_called_once_with('cmd.exe', arguments='/c hostname',
                                                      timeout_seconds=300)
        client.remove_service.assert_called_once()
        client.disconnect.assert_called_once()
        assert result.returncode == 0
        assert result.stdout == 'ok\n'

    def test_runwincmd_remote_connect_failure(self, mock_psexec):
        mock_psexec.return_value.connect.side_effect = OSError('unreachable')
        result = vdf.runwincmd('hostname', 'ddc-01')
        assert result.returncode == 1
        mock_psexec.return_value.create_service.assert_not_called()

    def test_run_executable_always_cleans_up(self, mock_psexec):
        client = mock_psexec.return_value
        client.run_executable.side_effect = RuntimeError('boom')
        result = vdf.run_executable('cmd.exe', '/c dir', 'ddc-01')
        assert result.returncode == 1
        client.remove_service.assert_called_once()
        client.disconnect.assert_called_once()

    def test_runwincmd_local(self, mock_subprocess):
        vdf.runwincmd('hostname')
        assert mock_subprocess.call_args[0][0] == 'hostname'

    def test_decode_windows_output(self):
        assert vdf.decode_windows_output(b'a\r\nb') == 'a\nb'
        assert vdf.decode_windows_output(None) == ''
        assert vdf.decode_windows_output(b'\x82') == '\u00e9'


class TestPowerShellJson:
    """Test ConvertTo-Json handling"""

    def test_array(self):
        assert vdf.parse_json_rows('[{"a": 1}, {"a": 2}]') == [{'a': 1}, {'a': 2}]

    def test_single_object(self):
        assert vdf.parse_json_rows('{"a": 1}') == [{'a': 1}]

    def test_empty(self):
        assert vdf.parse_json_rows('  \n') == []

    def test_invalid(self):
        with pytest.raises(vdf.VdiToolsError):
            vdf.parse_json_rows('Import-Module : not found')

    def test_powershell_json_failure(self, mock_subprocess):
        mock_subprocess.return_value = subprocess.CompletedProcess('x', 1, '', 'Access denied')
        with pytest.raises(vdf.VdiToolsError, match='Access denied'):
            vdf.powershell_json('Get-Thing')

    def test_powershell_document(self, mock_subprocess):
        mock_subprocess.return_value = subprocess.CompletedProcess('x', 0, '{"Servers": []}', '')
        assert vdf.powershell_document('Get-Thing') == {'Servers': []}

    def test_powershell_document_rejects_list(self, mock_subprocess):
        mock_subprocess.return_value = subprocess.CompletedProcess('x', 0, '[1, 2]', '')
        with pytest.raises(vdf.VdiToolsError):
            vdf.powershell_document('Get-Thing')


class TestPaths:
    """Test UNC path helpers"""

    def test_unc_from_drive_path(self):
        assert vdf.unc_path('pvs-01', r'd:\Store\vDisks') == r'\\pvs-01\D$\Store\vDisks'

    def test_unc_drive_root(self):
        assert vdf.unc_path('pvs-01', 'E:\\') == r'\\pvs-01\E$'

    def test_unc_passthrough(self):
        assert vdf.unc_path('pvs-01', '\\\\nas\\pvs\\Store\\') == r'\\nas\pvs\Store'

    def test_unc_rejects_relative(self):
        with pytest.raises(ValueError):
            vdf.unc_path('pvs-01', 'Store')

    def test_join_path_unc(self):
        assert vdf.join_path(r'\\pvs-01\D$\Store', 'a.vhdx') == r'\\pvs-01\D$\Store\a.vhdx'

    def test_join_path_local(self, tmp_path):
        assert vdf.join_path(str(tmp_path), 'a.vhdx') == os.path.join(str(tmp_path), 'a.vhdx')

    def test_server_from_unc(self):
        assert vdf.server_from_unc(r'\\pvs-02\E$\vDisks') == 'pvs-02'


class TestSessions:
    """Test vCenter and SMB session helpers"""

    def test_register_smb_session_once(self, mock_config):
        vdf.set_credentials(pw='pw')
        with patch('smbclient.register_session') as mock_register:
            assert vdf.register_smb_session('pvs-01')
            assert vdf.register_smb_session('pvs-01')
        mock_register.assert_called_once_with('pvs-01', username='CORP\\svc-vditools', password='pw')

    def test_register_smb_session_failure(self):
        with patch('smbclient.register_session', side_effect=ValueError('logon failure')):
            assert vdf.register_smb_session('pvs-01') is False
        assert 'pvs-01' not in vdf.smb_sessions

    def test_connect_vc_failure_returns_none(self):
        with patch('vdifunctions.connect.SmartConnect', side_effect=OSError('refused')):
            assert vdf.connect_vc('vc-01', 'user', 'pw') is None

    def test_connect_and_disconnect(self, monkeypatch):
        monkeypatch.setattr(vdf, 'sis', [])
        si = MagicMock()
        with patch('vdifunctions.connect.SmartConnect', return_value=si) as mock_connect, \
                patch('vdifunctions.connect.Disconnect') as mock_disconnect:
            assert vdf.connect_vc('vc-01', 'user', 'pw') is si
            assert mock_connect.call_args[1]['disableSslCertValidation'] is True
            vdf.disconnect_vcenters()
            mock_disconnect.assert_called_once_with(si)
        assert vdf.sis == []

    def test_get_entity(self):
        dc = MagicMock()
        dc.name = 'DC1'
        content = MagicMock()
        content.viewManager.CreateContainerView.return_value.view = [dc]
        assert vdf.get_entity(content, 'DC1') is dc
        assert vdf.get_entity(content, 'DC2') is None
