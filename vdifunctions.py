# vdifunctions.py - vditools Core Functions Library
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Shared helpers for the Citrix/VMware admin scripts in Tools/

import os
import subprocess
import socket
import datetime
import base64
import fnmatch
import json
import ntpath
import logging
import urllib3
from configparser import ConfigParser
from pyVim import connect
from pyVmomi import vim
from pypsexec.client import Client
import smbclient
from prettytable import PrettyTable

# Default logging level is WARNING (other levels are DEBUG, INFO, ERROR and CRITICAL)
logging.basicConfig(level=logging.WARNING)
# vCenters and Delivery Controllers commonly run self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

#==============================================================================
# STATIC VARIABLES
#==============================================================================

home = os.path.expanduser('~')
vdiroot = os.environ.get('VDITOOLS_HOME', f'{home}/vditools')
configini = os.environ.get('VDITOOLS_CONFIG', f'{vdiroot}/config.ini')
creds = f'{vdiroot}/creds.txt'

logfile = 'vditools.log'
logfiles = [f'{vdiroot}/{logfile}']

vcuser = 'administrator@vsphere.local'
winuser = 'Administrator'

sis = []  # all vCenter session instances
smb_sessions = set()  # servers with a registered SMB session

socket.setdefaulttimeout(300)

# Config parser
config = ConfigParser()

# Password variable - stores the password from creds.txt
_password = None
password = None

# Console output flag
console_output = True

POWERSHELL = 'powershell.exe'
POWERSHELL_ARGS = '-NoProfile -NonInteractive -ExecutionPolicy Bypass -EncodedCommand'


class VdiToolsError(Exception):
    """Raised when a vendor call leaves nothing sensible to continue with"""


#==============================================================================
# INITIALIZATION
#==============================================================================

def init(**kwargs):
    """
    Initialize the vdifunctions module

    :param kwargs:
        configfile - alternate config.ini path
        console - console output on/off
    """
    global configini, console_output, logfiles, _password, password

    configini = kwargs.get('configfile', None) or configini
    console_output = kwargs.get('console', console_output)

    if os.path.isfile(configini):
        config.read(configini)

    lfile = get_config_value('LOGGING', 'logfile')
    if lfile:
        logfiles = [lfile]

    if os.path.isfile(creds):
        with open(creds, 'r') as f:
            _password = f.readline().strip()
            password = _password

    if config.has_option('LOGGING', 'level'):
        logging.getLogger().setLevel(config.get('LOGGING', 'level').upper())


#==============================================================================
# CONFIG HELPER FUNCTIONS
#==============================================================================

def get_config_list(section: str, option: str, fallback: list = None) -> list:
    """
    Get a config option as a list, filtering out commented lines.

    Multiline values are split on newlines, single-line values on commas.
    Lines starting with '#' or ';' are treated as if they don't exist.

    :param section: Config section name (e.g., 'PVS', 'AUDIT')
    :param option: Config option name (e.g., 'modes', 'hosts')
    :param fallback: Default value if option doesn't exist (default: empty list)
    :return: List of non-commented, non-empty values

    Example:
        # [AUDIT]
        # hosts = ddc-01.corp.local
        #   #ddc-02.corp.local
        #   sf-01.corp.local

        get_config_list('AUDIT', 'hosts')
        # Returns: ['ddc-01.corp.local', 'sf-01.corp.local']
    """
    if fallback is None:
        fallback = []

    if not config.has_option(section, option):
        return fallback

    raw_value = config.get(section, option)
    if not raw_value:
        return fallback

    if '\n' in raw_value:
        lines = raw_value.split('\n')
    else:
        lines = raw_value.split(',')

    result = []
    for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith('#') or stripped.startswith(';'):
            continue
        result.append(stripped)

    return result


def get_config_value(section: str, option: str, fallback: str = '') -> str:
    """
    Get a config option value, returning fallback if commented out.

    :param section: Config section name
    :param option: Config option name
    :param fallback: Default value if option doesn't exist or is commented
    :return: Config value or fallback
    """
    if not config.has_option(section, option):
        return fallback

    value = config.get(section, option).strip()

    if value.startswith('#') or value.startswith(';'):
        return fallback

    return value


#==============================================================================
# PASSWORD FUNCTIONS
#==============================================================================

def get_password() -> str:
    """
    Get the admin password from creds.txt.

    The password is cached in _password after first read.

    :return: Password string, or empty string if not found
    """
    global _password, password
    if _password is None:
        if os.path.isfile(creds):
            with open(creds, 'r') as f:
                _password = f.readline().strip()
                password = _password
    return _password if _password else ''


def set_credentials(user=None, pw=None):
    """Apply --user/--password overrides for the rest of the run"""
    global _password, password
    if user:
        if not config.has_section('WINDOWS'):
            config.add_section('WINDOWS')
        config.set('WINDOWS', 'user', user)
    if pw is not None:
        _password = pw
        password = pw


def get_windows_user() -> str:
    """Windows admin account from [WINDOWS] user/domain, DOMAIN\\user form"""
    user = get_config_value('WINDOWS', 'user', winuser)
    domain = get_config_value('WINDOWS', 'domain')
    if domain and '\\' not in user and '@' not in user:
        return f'{domain}\\{user}'
    return user


#==============================================================================
# OUTPUT AND LOGGING
#==============================================================================

def write_output(msg, **kwargs):
    """
    Write output to log files and optionally to console

    :param msg: Message to write
    :param kwargs:
        logfile - specific logfile path
        console - override console output setting (True/False)
    """
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    formatted_msg = f'[{timestamp}] {msg}'

    lfile = kwargs.get('logfile', None)
    print_to_console = kwargs.get('console', console_output)

    targets = [lfile] if lfile else logfiles
    for lf in targets:
        try:
            os.makedirs(os.path.dirname(lf), exist_ok=True)
            with open(lf, 'a') as f:
                f.write(formatted_msg + '\n')
        except OSError:
            pass

    if print_to_console:
        print(formatted_msg)


def write_table(table: PrettyTable, **kwargs):
    """Write each line of a rendered PrettyTable through write_output"""
    for line in table.get_string().splitlines():
        write_output(line, **kwargs)


def make_table(field_names: list) -> PrettyTable:
    """Left aligned PrettyTable with the given columns"""
    table = PrettyTable()
    table.field_names = field_names
    table.align = 'l'
    return table


def format_bytes(num) -> str:
    """
    Human readable byte count (1024 base)

    :param num: number of bytes
    :return: e.g. '1.5 GB'
    """
    value = float(num)
    for unit in ['B', 'KB', 'MB', 'GB']:
        if abs(value) < 1024:
            if unit == 'B':
                return f'{int(value)} B'
            return f'{value:.1f} {unit}'
        value /= 1024
    return f'{value:.1f} TB'


def positive_int(value) -> int:
    """argparse type and config check for counts and sizes that must be 1 or more"""
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ValueError(f'{value!r} is not a whole number')
    if number < 1:
        raise ValueError(f'{number} must be 1 or more')
    return number


#==============================================================================
# OPERATOR INTERACTION
#==============================================================================

def confirm(prompt: str, assume_yes: bool = False) -> bool:
    """
    Ask a yes/no question on the console

    :param prompt: Question text
    :param assume_yes: Skip the prompt and answer yes
    :return: True only for 'y' or 'yes'
    """
    if assume_yes:
        write_output(f'{prompt} [y/N]: yes (--yes)')
        return True
    answer = input(f'{prompt} [y/N]: ')
    return answer.strip().lower() in ('y', 'yes')


def parse_selection(text: str, count: int) -> list:
    """
    Parse a menu selection like '1,3,5', '2-4' or 'all' into 0-based indices

    :param text: operator input
    :param count: number of menu entries
    :return: sorted list of unique indices
    :raises ValueError: on anything out of range or unparsable
    """
    text = text.strip().lower()
    if text == 'all':
        return list(range(count))

    selected = set()
    for part in text.replace(' ', '').split(','):
        if not part:
            continue
        if '-' in part:
            start, end = part.split('-', 1)
            first, last = int(start), int(end)
            if first > last:
                first, last = last, first
            numbers = range(first, last + 1)
        else:
            numbers = [int(part)]
        for number in numbers:
            if number < 1 or number > count:
                raise ValueError(f'Selection {number} is out of range 1-{count}')
            selected.add(number - 1)

    if not selected:
        raise ValueError('Nothing selected')
    return sorted(selected)


def choose_from_list(items: list, prompt: str, multiple: bool = True) -> list:
    """
    Numbered console menu

    :param items: display strings
    :param prompt: question shown under the menu
    :param multiple: allow more than one selection
    :return: list of selected 0-based indices
    """
    for i, item in enumerate(items, start=1):
        print(f'  {i:>3}) {item}')

    while True:
        answer = input(f'{prompt}: ')
        try:
            selection = parse_selection(answer, len(items))
        except ValueError as e:
            print(f'Invalid selection: {e}')
            continue
        if not multiple and len(selection) != 1:
            print('Please select exactly one entry')
            continue
        return selection


def match_any(name: str, patterns: list) -> bool:
    """Case-insensitive wildcard match against any pattern; empty list matches all"""
    if not patterns:
        return True
    lowered = name.lower()
    return any(fnmatch.fnmatch(lowered, p.lower()) for p in patterns)


#==============================================================================
# COMMAND EXECUTION
#==============================================================================

def run_command(cmd, **kwargs):
    """
    Execute a local command

    :param cmd: Command string or list
    :param kwargs: timeout, shell, capture_output
    :return: subprocess.CompletedProcess
    """
    timeout = kwargs.get('timeout', 300)
    shell = kwargs.get('shell', isinstance(cmd, str))
    capture = kwargs.get('capture_output', True)

    try:
        result = subprocess.run(
            cmd,
            shell=shell,
            capture_output=capture,
            text=True,
            timeout=timeout
        )
        return result
    except subprocess.TimeoutExpired:
        write_output(f'Command timed out: {cmd}')
        return subprocess.CompletedProcess(cmd, 1, '', 'Timeout')
    except OSError as e:
        write_output(f'Command failed: {cmd} - {e}')
        return subprocess.CompletedProcess(cmd, 1, '', str(e))


def decode_windows_output(data) -> str:
    """Decode pypsexec stdout/stderr bytes; tries UTF-8 then the OEM code page"""
    if not data:
        return ''
    if isinstance(data, str):
        return data.replace('\r', '')
    for enc in ('utf-8', 'cp437'):
        try:
            return data.decode(enc).replace('\r', '')
        except UnicodeDecodeError:
            continue
    return data.decode('utf-8', errors='replace').replace('\r', '')


def run_executable(executable, arguments, server, user=None, pw=None, **kwargs):
    """
    Run an executable on a remote Windows machine through PsExec over SMB

    :param executable: e.g. 'cmd.exe' or 'powershell.exe'
    :param arguments: argument string
    :param server: remote Windows hostname
    :param user: defaults to get_windows_user()
    :param pw: defaults to get_password()
    :return: subprocess.CompletedProcess with decoded stdout/stderr
    """
    user = user or get_windows_user()
    pw = pw if pw is not None else get_password()
    timeout = kwargs.get('timeout', 300)

    c = Client(server, username=user, password=pw, encrypt=kwargs.get('encrypt', True))
    try:
        c.connect()
    except Exception as e:
        write_output(f'Failed to connect to {server} -- {e}')
        return subprocess.CompletedProcess(executable, 1, '', str(e))

    try:
        c.create_service()
        stdout, stderr, rc = c.run_executable(executable, arguments=arguments,
                                              timeout_seconds=timeout)
    except Exception as e:
        write_output(f'Failed to run {executable} on {server} -- {e}')
        return subprocess.CompletedProcess(executable, 1, '', str(e))
    finally:  # must always do this
        try:
            c.remove_service()
        except Exception as e:
            logging.debug(f'remove_service on {server}: {e}')
        c.disconnect()

    return subprocess.CompletedProcess(executable, rc,
                                       decode_windows_output(stdout),
                                       decode_windows_output(stderr))


def runwincmd(cmd, server=None, user=None, pw=None, **kwargs):
    """
    Run a cmd.exe command locally (server=None) or on a remote Windows machine

    :param cmd: the command to run
    :param server: remote Windows hostname or None for this machine
    :return: subprocess.CompletedProcess
    """
    if server is None:
        return run_command(cmd, **kwargs)
    arg = f'/c {cmd}'  # without /c the remote cmd.exe waits for input
    return run_executable('cmd.exe', arg, server, user, pw, **kwargs)


def encode_powershell(script: str) -> str:
    """Base64 of the UTF-16LE script, as -EncodedCommand expects"""
    return base64.b64encode(script.encode('utf-16-le')).decode('ascii')


def run_powershell(script, server=None, user=None, pw=None, **kwargs):
    """
    Run a PowerShell script locally or on a remote Windows machine

    The script is passed with -EncodedCommand so no quoting survives to cmd.exe.

    :param script: PowerShell source
    :param server: remote Windows hostname or None for this machine
    :return: subprocess.CompletedProcess
    """
    encoded = encode_powershell(script)
    if server is None:
        cmd = [POWERSHELL] + POWERSHELL_ARGS.split() + [encoded]
        return run_command(cmd, shell=False, **kwargs)
    return run_executable(POWERSHELL, f'{POWERSHELL_ARGS} {encoded}',
                          server, user, pw, **kwargs)


def parse_json_rows(text: str) -> list:
    """
    Parse ConvertTo-Json output into a list of dicts

    ConvertTo-Json emits a bare object for a single result and nothing at all
    for an empty pipeline.

    :raises VdiToolsError: on invalid JSON
    """
    text = text.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise VdiToolsError(f'Could not parse PowerShell JSON output: {e}')
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


def powershell_json(script, server=None, user=None, pw=None, **kwargs):
    """
    Run a PowerShell script that ends in ConvertTo-Json and return its rows

    :return: list of dicts
    :raises VdiToolsError: on non-zero exit or invalid JSON
    """
    where = server or 'localhost'
    result = run_powershell(script, server, user, pw, **kwargs)
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or '').strip()
        raise VdiToolsError(f'PowerShell failed on {where} (rc={result.returncode}): {detail}')
    return parse_json_rows(result.stdout)


def powershell_document(script, server=None, user=None, pw=None, **kwargs) -> dict:
    """Like powershell_json for scripts that emit exactly one JSON object"""
    rows = powershell_json(script, server, user, pw, **kwargs)
    if len(rows) != 1 or not isinstance(rows[0], dict):
        raise VdiToolsError(f'Expected one JSON object from {server or "localhost"}, got {len(rows)}')
    return rows[0]


#==============================================================================
# VSPHERE OPERATIONS
#==============================================================================

def connect_vc(host, user, password=None, **kwargs):
    """
    Connect to a vCenter

    :param host: vCenter hostname
    :param user: Username
    :param password: Password
    :return: ServiceInstance on success, None on failure
    """
    if password is None:
        password = get_password()

    port = kwargs.get('port', 443)

    try:
        si = connect.SmartConnect(
            host=host,
            user=user,
            pwd=password,
            port=port,
            disableSslCertValidation=True
        )
        sis.append(si)
        write_output(f'Connected to {host}')
        return si
    except Exception as e:
        write_output(f'Failed to connect to {host}: {e}')
        return None


def disconnect_vcenters():
    """Disconnect all vCenter sessions"""
    for si in sis:
        try:
            connect.Disconnect(si)
        except Exception as e:
            logging.debug(f'Disconnect failed: {e}')
    sis.clear()


def get_all_objs(si_content, vimtype):
    """
    Method that populates objects of type vimtype such as
    vim.Datacenter, vim.Folder, vim.ClusterComputeResource
    :param si_content: serviceinstance.content
    :param vimtype: VIM object type name (list)
    :return: dict of {object: name}
    """
    obj = {}
    container = si_content.viewManager.CreateContainerView(si_content.rootFolder, vimtype, True)
    for managed_object_ref in container.view:
        obj.update({managed_object_ref: managed_object_ref.name})
    container.Destroy()
    return obj


def get_entity(si_content, name):
    """
    Find a datacenter, folder, cluster or host by name

    :return: managed entity or None
    """
    vimtypes = [vim.Datacenter, vim.Folder, vim.ClusterComputeResource, vim.HostSystem]
    for entity, entity_name in get_all_objs(si_content, vimtypes).items():
        if entity_name == name:
            return entity
    return None


#==============================================================================
# SMB / FILE SHARE OPERATIONS
#==============================================================================

def register_smb_session(server, user=None, pw=None):
    """
    Register an SMB session with a server once per run

    :param server: Windows file server hostname
    :return: True on success
    """
    if server in smb_sessions:
        return True
    user = user or get_windows_user()
    pw = pw if pw is not None else get_password()
    try:
        smbclient.register_session(server, username=user, password=pw)
    except Exception as e:
        write_output(f'Failed to open SMB session to {server}: {e}')
        return False
    smb_sessions.add(server)
    return True


def unc_path(server: str, path: str) -> str:
    """
    Turn a path local to server into its admin share UNC path

    D:\\Store -> \\\\server\\D$\\Store; UNC paths are returned unchanged.
    """
    if path.startswith('\\\\'):
        return path.rstrip('\\')
    drive, rest = ntpath.splitdrive(path)
    if not drive or not drive.endswith(':'):
        raise ValueError(f'Not a drive or UNC path: {path}')
    rest = rest.strip('\\')
    share = f'\\\\{server}\\{drive[0].upper()}$'
    return f'{share}\\{rest}' if rest else share


def join_path(base: str, *names) -> str:
    """Join with backslashes for UNC bases and os.path.join otherwise"""
    if base.startswith('\\\\'):
        return ntpath.join(base, *names)
    return os.path.join(base, *names)


def server_from_unc(path: str) -> str:
    """\\\\server\\share\\... -> server"""
    return path.lstrip('\\').split('\\', 1)[0]
