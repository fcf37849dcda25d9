#!/usr/bin/env python3
# service_accounts.py - vditools Service Account Auditor
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Lists the accounts Windows services and scheduled tasks run as

"""
Service Account Auditor

Before a service account password change, or when retiring an account, it
helps to know everything that logs on with it. For each host this tool
lists:
1. Running services and their StartName (Win32_Service)
2. Scheduled tasks and their principal (Get-ScheduledTask)
3. Services registered in HKLM\\SYSTEM\\CurrentControlSet\\Services with an
   ObjectName, including ones Win32_Service does not show as running

Built-in accounts (LocalSystem, NT AUTHORITY\\..., NT SERVICE\\...) are
hidden unless --include-builtin is given.

Usage:
    python3 service_accounts.py                          # this machine
    python3 service_accounts.py --hosts ddc-01 ddc-02 --account svc-citrix
    python3 service_accounts.py --account "CORP\\svc-*" --csv accounts.csv
"""

import os
import sys
import argparse
import csv
import fnmatch
from dataclasses import dataclass, asdict
from typing import List, Optional

# Add vditools directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import vdifunctions as vdf

#==============================================================================
# CONFIGURATION
#==============================================================================

SCRIPT_VERSION = '1.0'

SERVICES_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Get-CimInstance -ClassName Win32_Service %(filter)s |
    Select-Object Name, DisplayName, StartName, State, StartMode |
    ConvertTo-Json -Compress
"""

TASKS_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Get-ScheduledTask | Select-Object TaskPath, TaskName,
    @{n='State';e={[string]$_.State}},
    @{n='UserId';e={$_.Principal.UserId}},
    @{n='LogonType';e={[string]$_.Principal.LogonType}} |
    ConvertTo-Json -Compress
"""

REGISTRY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Get-ChildItem 'HKLM:\SYSTEM\CurrentControlSet\Services' | ForEach-Object {
    $svc = Get-ItemProperty -Path $_.PSPath
    if ($svc.ObjectName) {
        [pscustomobject]@{
            Name = $_.PSChildName
            ObjectName = $svc.ObjectName
            Start = $svc.Start
            ImagePath = $svc.ImagePath
        }
    }
} | ConvertTo-Json -Compress
"""

RUNNING_FILTER = '-Filter "State = \'Running\'"'

CATEGORIES = ['Services', 'Scheduled Tasks', 'Registry Services']

START_TYPES = {0: 'Boot', 1: 'System', 2: 'Automatic', 3: 'Manual', 4: 'Disabled'}

BUILTIN_ACCOUNTS = {
    '',
    'localsystem',
    '.\\localsystem',
    'system',
    'local service',
    'network service',
    'localservice',
    'networkservice',
    'interactive',
    'users',
    'administrators',
    'authenticated users',
    'everyone',
    's-1-5-18',
    's-1-5-19',
    's-1-5-20',
}
BUILTIN_PREFIXES = ('nt authority\\', 'nt service\\', 'builtin\\')

CSV_FIELDS = ['host', 'category', 'name', 'account', 'state', 'detail']

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass
class AccountEntry:
    """One service or task and the account it runs as"""
    host: str
    category: str
    name: str
    account: str
    state: str = ''
    detail: str = ''


#==============================================================================
# ACCOUNT MATCHING
#==============================================================================

def is_builtin(account: Optional[str]) -> bool:
    """True for LocalSystem, NT AUTHORITY\\*, NT SERVICE\\* and friends"""
    name = (account or '').strip().lower()
    return name in BUILTIN_ACCOUNTS or name.startswith(BUILTIN_PREFIXES)


def account_variants(account: str) -> set:
    """'CORP\\svc' and 'svc@corp.local' both also answer to 'svc'"""
    name = account.strip().lower()
    variants = {name}
    if '\\' in name:
        variants.add(name.split('\\', 1)[1])
    if '@' in name:
        variants.add(name.split('@', 1)[0])
    return variants


def account_matches(account: Optional[str], pattern: str) -> bool:
    """
    Case-insensitive account filter

    A pattern with * or ? is a wildcard match, anything else a substring match.
    """
    if not account:
        return False
    pattern = pattern.strip().lower()
    if '*' not in pattern and '?' not in pattern:
        pattern = f'*{pattern}*'
    return any(fnmatch.fnmatchcase(v, pattern) for v in account_variants(account))


def filter_entries(entries: List[AccountEntry], account: str = None,
                   include_builtin: bool = False) -> List[AccountEntry]:
    result = []
    for entry in entries:
        if not include_builtin and is_builtin(entry.account):
            continue
        if account and not account_matches(entry.account, account):
            continue
        result.append(entry)
    return result


#==============================================================================
# QUERIES
#==============================================================================

def get_services(host: Optional[str], all_services: bool = False) -> List[AccountEntry]:
    script = SERVICES_SCRIPT % {'filter': '' if all_services else RUNNING_FILTER}
    entries = []
    for row in vdf.powershell_json(script, host):
        entries.append(AccountEntry(
            host=host or 'localhost',
            category='Services',
            name=row.get('Name') or '',
            account=row.get('StartName') or '',
            state=row.get('State') or '',
            detail=f'{row.get("DisplayName") or ""} ({row.get("StartMode") or "?"})',
        ))
    return entries


def get_tasks(host: Optional[str]) -> List[AccountEntry]:
    entries = []
    for row in vdf.powershell_json(TASKS_SCRIPT, host):
        entries.append(AccountEntry(
            host=host or 'localhost',
            category='Scheduled Tasks',
            name=f'{row.get("TaskPath") or ""}{row.get("TaskName") or ""}',
            account=row.get('UserId') or '',
            state=row.get('State') or '',
            detail=row.get('LogonType') or '',
        ))
    return entries


def get_registry_services(host: Optional[str]) -> List[AccountEntry]:
    entries = []
    for row in vdf.powershell_json(REGISTRY_SCRIPT, host):
        start = row.get('Start')
        entries.append(AccountEntry(
            host=host or 'localhost',
            category='Registry Services',
            name=row.get('Name') or '',
            account=row.get('ObjectName') or '',
            state=START_TYPES.get(start, str(start) if start is not None else ''),
            detail=row.get('ImagePath') or '',
        ))
    return entries


def audit_host(host: Optional[str], all_services: bool = False) -> List[AccountEntry]:
    """
    Collect services, tasks and registry services of one host

    :param host: Windows hostname, None for this machine
    :raises VdiToolsError: if any query fails
    """
    vdf.write_output(f'Auditing {host or "localhost"}...')
    entries = []
    entries.extend(get_services(host, all_services))
    entries.extend(get_tasks(host))
    entries.extend(get_registry_services(host))
    return entries


#==============================================================================
# OUTPUT
#==============================================================================

def print_tables(host: str, entries: List[AccountEntry]):
    for category in CATEGORIES:
        rows = [e for e in entries if e.category == category]
        vdf.write_output('')
        vdf.write_output(f'{host} - {category} ({len(rows)})')
        if not rows:
            continue
        table = vdf.make_table(['Name', 'Account', 'State', 'Detail'])
        for e in rows:
            table.add_row([e.name, e.account, e.state, e.detail])
        vdf.write_table(table)


def write_csv(path: str, entries: List[AccountEntry]):
    with open(path, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for entry in entries:
            writer.writerow(asdict(entry))
    vdf.write_output(f'Wrote {len(entries)} row(s) to {path}')


#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='vditools Service Account Auditor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 service_accounts.py
  python3 service_accounts.py --hosts ddc-01 ddc-02 --account svc-citrix
  python3 service_accounts.py --account "svc-*" --csv accounts.csv
        """
    )

    parser.add_argument('--hosts', nargs='+', help='Windows hosts (default [AUDIT] hosts, else this machine)')
    parser.add_argument('--account', help='Only show this account (substring or wildcard)')
    parser.add_argument('--include-builtin', action='store_true', help='Show LocalSystem, NT AUTHORITY etc.')
    parser.add_argument('--all-services', action='store_true', help='Include services that are not running')
    parser.add_argument('--csv', help='Also write all rows to this CSV file')
    parser.add_argument('--user', help='Windows admin account (default [WINDOWS] user)')
    parser.add_argument('--password', help='Windows admin password (defaults to creds.txt)')
    parser.add_argument('--config', help='Alternate config.ini')
    parser.add_argument('--version', action='version', version=f'%(prog)s {SCRIPT_VERSION}')

    args = parser.parse_args()
    vdf.init(configfile=args.config)
    vdf.set_credentials(args.user, args.password)

    vdf.write_output('=' * 60)
    vdf.write_output('  vditools Service Account Auditor')
    vdf.write_output(f'  Version {SCRIPT_VERSION}')
    vdf.write_output('=' * 60)

    hosts = args.hosts or vdf.get_config_list('AUDIT', 'hosts') or [None]
    account = args.account or vdf.get_config_value('AUDIT', 'account') or None

    all_entries = []
    failed = []
    for host in hosts:
        name = host or 'localhost'
        try:
            entries = audit_host(host, args.all_services)
        except vdf.VdiToolsError as e:
            vdf.write_output(f'ERROR: {name}: {e}')
            failed.append(name)
            continue
        entries = filter_entries(entries, account, args.include_builtin)
        print_tables(name, entries)
        all_entries.extend(entries)

    if args.csv:
        write_csv(args.csv, all_entries)

    vdf.write_output('')
    vdf.write_output(f'{len(all_entries)} entr{"y" if len(all_entries) == 1 else "ies"} on '
                     f'{len(hosts) - len(failed)} host(s)')
    if failed:
        vdf.write_output(f'WARNING: Could not audit: {", ".join(failed)}')
        sys.exit(1)


if __name__ == '__main__':
    main()
