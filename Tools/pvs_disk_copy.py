#!/usr/bin/env python3
# pvs_disk_copy.py - vditools PVS vDisk Version Copier
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Finds vDisk version files missing from PVS store servers and copies them

"""
PVS vDisk Version Copier

Provisioning Services farms with local (non-shared) stores need every vDisk
version file present on every server that streams it. This tool:
1. Reads servers, stores, disk locators and disk versions from a PVS server
2. Works out which .vhdx/.avhdx/.pvp files each store server should hold
3. Checks every server's store share and reports what is missing
4. After confirmation, copies each missing file from a server that has it

Copies run one at a time through this machine over SMB.

Usage:
    python3 pvs_disk_copy.py --server pvs-01.corp.local
    python3 pvs_disk_copy.py --report-only
    python3 pvs_disk_copy.py --modes Production Test --disk Win11*
    python3 pvs_disk_copy.py --yes            # no confirmation prompt
"""

import os
import sys
import argparse
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

# Add vditools directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import smbclient
import smbclient.path
from smbprotocol.exceptions import SMBException

import vdifunctions as vdf

#==============================================================================
# CONFIGURATION
#==============================================================================

SCRIPT_VERSION = '1.0'

PVS_SNAPIN = r'C:\Program Files\Citrix\Provisioning Services Console\Citrix.PVS.SnapIn.dll'

ACCESS_MODES = {
    0: 'Production',
    1: 'Maintenance',
    2: 'MaintenanceHighestVersion',
    3: 'Override',
    4: 'Merge',
    5: 'MergeMaintenance',
    6: 'MergeTest',
    7: 'Test',
}

DEFAULT_MODES = ['Production']
BASE_EXTENSIONS = ('.vhd', '.vhdx')
SIDECAR_EXTENSION = '.pvp'
LOCK_EXTENSION = '.lok'
PARTIAL_SUFFIX = '.partial'
DEFAULT_CHUNK_MB = 8

INVENTORY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Import-Module '%(snapin)s'
$sites = @(Get-PvsSite)
$servers = @(foreach ($site in $sites) {
    Get-PvsServer -SiteName $site.SiteName | Select-Object ServerName, SiteName
})
$stores = @(Get-PvsStore | Select-Object StoreName, Path)
$serverStores = @(foreach ($server in $servers) {
    Get-PvsServerStore -ServerName $server.ServerName -ErrorAction SilentlyContinue |
        Select-Object ServerName, StoreName, Path
})
$disks = @(foreach ($site in $sites) {
    Get-PvsDiskLocator -SiteName $site.SiteName -ErrorAction SilentlyContinue |
        Select-Object DiskLocatorId, @{n='Name';e={$_.DiskLocatorName}}, StoreName, SiteName
})
$versions = @(foreach ($disk in $disks) {
    Get-PvsDiskVersion -DiskLocatorId $disk.DiskLocatorId |
        Select-Object DiskLocatorId, Version, @{n='Access';e={[int]$_.Access}}, DiskFileName, DeleteWhenFree
})
[pscustomobject]@{
    Servers = $servers
    Stores = $stores
    ServerStores = $serverStores
    Disks = $disks
    Versions = $versions
} | ConvertTo-Json -Depth 4 -Compress
"""

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass(frozen=True)
class StoreLocation:
    """Where one server keeps one store, as a share path reachable from here"""
    server: str
    store: str
    path: str


@dataclass
class DiskVersion:
    """One row of Get-PvsDiskVersion joined with its disk locator"""
    disk_id: str
    disk: str
    store: str
    site: str
    version: int
    access: int
    file_name: str
    delete_when_free: bool = False

    @property
    def mode(self) -> str:
        return access_mode_name(self.access)

    @property
    def is_base(self) -> bool:
        return self.file_name.lower().endswith(BASE_EXTENSIONS)


@dataclass(frozen=True)
class ExpectedFile:
    """A file every location of a store should hold"""
    store: str
    file_name: str
    optional: bool = False


@dataclass(frozen=True)
class MissingFile:
    """An expected file absent from one location"""
    store: str
    file_name: str
    location: StoreLocation


#==============================================================================
# ACCESS MODES
#==============================================================================

def access_mode_name(access) -> str:
    return ACCESS_MODES.get(access, f'Unknown({access})')


def parse_access(value) -> int:
    """Access as returned by PowerShell: an int, a numeric string or a mode name"""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lstrip('-').isdigit():
        return int(text)
    for number, name in ACCESS_MODES.items():
        if name.lower() == text.lower():
            return number
    raise ValueError(f'Unknown disk access mode: {value}')


def parse_modes(names: List[str]) -> set:
    """
    Translate operator mode names into access numbers

    :param names: e.g. ['Production', 'test'] or ['all']
    :return: set of access numbers
    :raises ValueError: on an unknown name
    """
    if any(name.lower() == 'all' for name in names):
        return set(ACCESS_MODES)
    return {parse_access(name) for name in names}


#==============================================================================
# INVENTORY
#==============================================================================

def get_inventory(server: Optional[str] = None) -> dict:
    """
    Read servers, stores, disks and versions from a PVS server

    :param server: PVS server hostname, None to run on this machine
    :return: dict with Servers, Stores, ServerStores, Disks, Versions lists
    """
    vdf.write_output(f'Reading PVS inventory from {server or "localhost"}...')
    doc = vdf.powershell_document(INVENTORY_SCRIPT % {'snapin': PVS_SNAPIN}, server)
    inventory = {}
    for key in ('Servers', 'Stores', 'ServerStores', 'Disks', 'Versions'):
        value = doc.get(key) or []
        # ConvertTo-Json collapses one-element arrays nested in an object
        inventory[key] = value if isinstance(value, list) else [value]
    return inventory


def build_locations(inventory: dict, stores: List[str] = None) -> Dict[str, List[StoreLocation]]:
    """
    Resolve every (server, store) pair to a share path

    Server-store overrides win over the store's default path. Servers that
    resolve to the same share (a shared CIFS store) collapse into the first.

    :param inventory: output of get_inventory()
    :param stores: optional store name filters (wildcards)
    :return: {store name: [StoreLocation, ...]} in server enumeration order
    """
    servers = [row['ServerName'] for row in inventory.get('Servers', [])]
    order = {name.lower(): i for i, name in enumerate(servers)}

    overrides = {}
    for row in inventory.get('ServerStores', []):
        overrides.setdefault(row['StoreName'], []).append((row['ServerName'], row.get('Path') or ''))

    result = {}
    for row in inventory.get('Stores', []):
        store = row['StoreName']
        if not vdf.match_any(store, stores):
            continue
        default_path = row.get('Path') or ''

        pairs = overrides.get(store) or [(server, '') for server in servers]
        pairs = sorted(pairs, key=lambda pair: order.get(pair[0].lower(), len(order)))

        seen = {}
        locations = []
        for server, path in pairs:
            local_path = path or default_path
            if not local_path:
                vdf.write_output(f'WARNING: No path for store {store} on {server}; skipping')
                continue
            try:
                share = vdf.unc_path(server, local_path)
            except ValueError as e:
                vdf.write_output(f'WARNING: {store} on {server}: {e}; skipping')
                continue
            key = share.lower()
            if key in seen:
                vdf.write_output(f'{server} shares {store} at {share} with {seen[key]}')
                continue
            seen[key] = server
            locations.append(StoreLocation(server, store, share))
        result[store] = locations

    return result


def parse_versions(inventory: dict) -> List[DiskVersion]:
    """
    Join disk versions with their disk locators

    :return: versions in disk enumeration order, version ascending within a disk
    """
    disks = inventory.get('Disks', [])
    by_id = {row['DiskLocatorId']: row for row in disks}
    disk_order = {row['DiskLocatorId']: i for i, row in enumerate(disks)}

    versions = []
    for row in inventory.get('Versions', []):
        disk = by_id.get(row.get('DiskLocatorId'))
        if disk is None:
            continue
        versions.append(DiskVersion(
            disk_id=disk['DiskLocatorId'],
            disk=disk.get('Name') or '',
            store=disk.get('StoreName') or '',
            site=disk.get('SiteName') or '',
            version=int(row['Version']),
            access=parse_access(row.get('Access', 0)),
            file_name=row.get('DiskFileName') or '',
            delete_when_free=bool(row.get('DeleteWhenFree')),
        ))

    versions.sort(key=lambda v: (disk_order[v.disk_id], v.version))
    return versions


def select_versions(versions: List[DiskVersion], modes: set,
                    disks: List[str] = None, stores: List[str] = None) -> List[DiskVersion]:
    """
    Pick the versions to replicate plus the chain each one depends on

    A delta version is useless without the lower versions back to the
    nearest base file, so those are selected too.

    :param versions: output of parse_versions()
    :param modes: access numbers to select
    :param disks: optional disk name filters (wildcards)
    :param stores: optional store name filters (wildcards)
    :return: selected versions, same order as the input
    """
    by_disk = {}
    for v in versions:
        if not vdf.match_any(v.disk, disks) or not vdf.match_any(v.store, stores):
            continue
        by_disk.setdefault(v.disk_id, []).append(v)

    selected = []
    for disk_versions in by_disk.values():
        wanted = set()
        for i, v in enumerate(disk_versions):
            if v.delete_when_free or v.access not in modes:
                continue
            for lower in reversed(disk_versions[:i + 1]):
                wanted.add(lower.version)
                if lower.is_base:
                    break
        selected.extend(v for v in disk_versions if v.version in wanted)

    return selected


def sidecar_name(file_name: str) -> str:
    stem, _ = os.path.splitext(file_name)
    return stem + SIDECAR_EXTENSION


def expected_files(versions: List[DiskVersion]) -> List[ExpectedFile]:
    """
    Files each store location should hold for the selected versions

    Every base file brings an optional .pvp sidecar; a sidecar that no
    server holds is not reported.
    """
    result = []
    seen = set()

    def add(store, name, optional):
        key = (store.lower(), name.lower())
        if key in seen or name.lower().endswith(LOCK_EXTENSION):
            return
        seen.add(key)
        result.append(ExpectedFile(store, name, optional))

    for v in versions:
        if not v.file_name:
            vdf.write_output(f'WARNING: {v.disk} version {v.version} has no file name')
            continue
        add(v.store, v.file_name, False)
        if v.is_base:
            add(v.store, sidecar_name(v.file_name), True)

    return result


#==============================================================================
# DIFF
#==============================================================================

def scan_locations(expected: List[ExpectedFile], locations: Dict[str, List[StoreLocation]],
                   unreachable: set = None) -> Tuple[dict, List[MissingFile]]:
    """
    Check which locations hold each expected file

    Locations on unreachable servers, or whose share cannot be read, count
    as not holding anything.

    :param unreachable: servers without an SMB session, as open_sessions() returns
    :return: (presence, missing) where presence is
             {(store, file name): [StoreLocation, ...]} in server order and
             missing lists every (file, location) that lacks it
    """
    presence = {}
    missing = []
    unreachable = unreachable or set()

    for item in expected:
        holders = []
        absent = []
        for location in locations.get(item.store, []):
            if vdf.server_from_unc(location.path) in unreachable:
                absent.append(location)
                continue
            path = vdf.join_path(location.path, item.file_name)
            try:
                found = smbclient.path.isfile(path)
            except (OSError, SMBException, ValueError) as e:
                vdf.write_output(f'WARNING: Could not check {path}: {e}')
                found = False
            if found:
                holders.append(location)
            else:
                absent.append(location)

        if item.optional and not holders:
            continue

        presence[(item.store, item.file_name)] = holders
        missing.extend(MissingFile(item.store, item.file_name, location) for location in absent)

    return presence, missing


def find_source(presence: dict, store: str, file_name: str) -> Optional[StoreLocation]:
    """First location in server order holding the file"""
    holders = presence.get((store, file_name), [])
    return holders[0] if holders else None


def report_missing(missing: List[MissingFile], presence: dict):
    """Print the missing files table"""
    table = vdf.make_table(['Server', 'Store', 'File', 'Status', 'Source'])
    for item in missing:
        source = find_source(presence, item.store, item.file_name)
        table.add_row([item.location.server, item.store, item.file_name,
                       'MISSING' if source else 'NO SOURCE',
                       source.server if source else '(none)'])
    vdf.write_table(table)


#==============================================================================
# COPY
#==============================================================================

def report_progress(name: str, copied: int, total: int, start: float):
    elapsed = max(time.monotonic() - start, 0.001)
    percent = copied * 100 // total if total else 100
    rate = copied / elapsed / (1024 * 1024)
    vdf.write_output(f'  {name}: {vdf.format_bytes(copied)} / {vdf.format_bytes(total)} '
                     f'({percent}%) {rate:.1f} MB/s')


def copy_file(source: str, destination: str, chunk_size: int = DEFAULT_CHUNK_MB * 1024 * 1024) -> int:
    """
    Stream one file between shares with progress at every 10%

    Data lands in <destination>.partial and is renamed once complete, so a
    failed copy never leaves a file that looks present.

    :return: bytes copied
    """
    name = os.path.basename(destination.replace('\\', '/'))
    total = smbclient.stat(source).st_size
    partial = destination + PARTIAL_SUFFIX
    copied = 0
    next_mark = 10
    start = time.monotonic()

    try:
        with smbclient.open_file(source, mode='rb') as src, \
                smbclient.open_file(partial, mode='wb') as dst:
            while True:
                chunk = src.read(chunk_size)
                if not chunk:
                    break
                dst.write(chunk)
                copied += len(chunk)
                percent = copied * 100 // total if total else 100
                if percent >= next_mark:
                    report_progress(name, copied, total, start)
                    next_mark = (percent // 10 + 1) * 10
        smbclient.rename(partial, destination)
    except (OSError, SMBException, ValueError):
        try:
            smbclient.remove(partial)
        except (OSError, SMBException, ValueError) as e:
            vdf.write_output(f'  Could not remove {partial}: {e}')
        raise

    elapsed = max(time.monotonic() - start, 0.001)
    rate = copied / elapsed / (1024 * 1024)
    vdf.write_output(f'  {name}: copied {vdf.format_bytes(copied)} in {elapsed:.1f}s ({rate:.1f} MB/s)')
    return copied


def copy_missing(missing: List[MissingFile], presence: dict,
                 chunk_size: int = DEFAULT_CHUNK_MB * 1024 * 1024) -> dict:
    """
    Copy every missing file from the first server that holds it

    A completed destination becomes a source for later copies.

    :return: dict with copied, skipped, failed counts and bytes
    """
    summary = {'copied': 0, 'skipped': 0, 'failed': 0, 'bytes': 0}

    for number, item in enumerate(missing, start=1):
        source = find_source(presence, item.store, item.file_name)
        if source is None:
            vdf.write_output(f'No server holds {item.file_name}; skipping')
            summary['skipped'] += 1
            continue

        src = vdf.join_path(source.path, item.file_name)
        dst = vdf.join_path(item.location.path, item.file_name)
        vdf.write_output(f'[{number}/{len(missing)}] {item.file_name}: '
                         f'{source.server} -> {item.location.server}')
        try:
            summary['bytes'] += copy_file(src, dst, chunk_size)
        except (OSError, SMBException, ValueError) as e:
            vdf.write_output(f'ERROR: Copy of {item.file_name} to {item.location.server} failed: {e}')
            summary['failed'] += 1
            continue

        summary['copied'] += 1
        presence.setdefault((item.store, item.file_name), []).append(item.location)

    return summary


def open_sessions(locations: Dict[str, List[StoreLocation]]) -> set:
    """
    Register SMB sessions for every server behind a share path

    :return: servers whose session could not be opened
    """
    failed = set()
    servers = []
    for store_locations in locations.values():
        for location in store_locations:
            server = vdf.server_from_unc(location.path)
            if server not in servers:
                servers.append(server)
    for server in servers:
        if not vdf.register_smb_session(server):
            failed.add(server)
    return failed


#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='vditools PVS vDisk Version Copier',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 pvs_disk_copy.py --server pvs-01.corp.local
  python3 pvs_disk_copy.py --report-only
  python3 pvs_disk_copy.py --modes Production Test --disk Win11*
        """
    )

    parser.add_argument('--server', help='PVS server to query (default: [PVS] server, else this machine)')
    parser.add_argument('--store', nargs='+', help='Only these stores (wildcards allowed)')
    parser.add_argument('--disk', nargs='+', help='Only these vDisks (wildcards allowed)')
    parser.add_argument('--modes', nargs='+',
                        help=f'Access modes to replicate: {", ".join(ACCESS_MODES.values())} or all')
    parser.add_argument('--report-only', action='store_true', help='Report missing files, copy nothing')
    parser.add_argument('--yes', action='store_true', help='Copy without asking for confirmation')
    parser.add_argument('--chunk-mb', type=vdf.positive_int, help=f'Copy buffer size in MB (default {DEFAULT_CHUNK_MB})')
    parser.add_argument('--user', help='Windows admin account (default [WINDOWS] user)')
    parser.add_argument('--password', help='Windows admin password (defaults to creds.txt)')
    parser.add_argument('--config', help='Alternate config.ini')
    parser.add_argument('--version', action='version', version=f'%(prog)s {SCRIPT_VERSION}')

    args = parser.parse_args()
    vdf.init(configfile=args.config)

    vdf.write_output('=' * 60)
    vdf.write_output('  vditools PVS vDisk Version Copier')
    vdf.write_output(f'  Version {SCRIPT_VERSION}')
    vdf.write_output('=' * 60)

    server = args.server or vdf.get_config_value('PVS', 'server') or None
    stores = args.store or vdf.get_config_list('PVS', 'stores')
    mode_names = args.modes or vdf.get_config_list('PVS', 'modes', DEFAULT_MODES)
    vdf.set_credentials(args.user, args.password)

    try:
        chunk_mb = args.chunk_mb or vdf.positive_int(vdf.get_config_value('PVS', 'chunk_mb', str(DEFAULT_CHUNK_MB)))
    except ValueError as e:
        vdf.write_output(f'ERROR: [PVS] chunk_mb: {e}')
        sys.exit(1)

    try:
        modes = parse_modes(mode_names)
    except ValueError as e:
        vdf.write_output(f'ERROR: {e}')
        sys.exit(1)

    try:
        inventory = get_inventory(server)
    except vdf.VdiToolsError as e:
        vdf.write_output(f'ERROR: {e}')
        sys.exit(1)

    locations = build_locations(inventory, stores)
    versions = select_versions(parse_versions(inventory), modes, args.disk, stores)
    vdf.write_output(f'{len(locations)} store(s), {len(versions)} disk version(s) in modes: '
                     f'{", ".join(access_mode_name(m) for m in sorted(modes))}')

    if not versions:
        vdf.write_output('No disk versions match - nothing to do')
        sys.exit(0)

    unreachable = open_sessions(locations)
    if unreachable:
        vdf.write_output(f'WARNING: Unreachable: {", ".join(sorted(unreachable))}; their files show as missing')

    presence, missing = scan_locations(expected_files(versions), locations, unreachable)
    if not missing:
        vdf.write_output('All store servers hold every expected file')
        sys.exit(0)

    vdf.write_output(f'{len(missing)} missing file(s):')
    report_missing(missing, presence)

    if args.report_only:
        sys.exit(0)

    if not vdf.confirm(f'Copy {len(missing)} missing file(s)?', args.yes):
        vdf.write_output('Copy cancelled')
        sys.exit(0)

    summary = copy_missing(missing, presence, chunk_mb * 1024 * 1024)

    vdf.write_output('')
    vdf.write_output('=' * 60)
    vdf.write_output('Summary')
    vdf.write_output('=' * 60)
    vdf.write_output(f'  Copied: {summary["copied"]} ({vdf.format_bytes(summary["bytes"])})')
    vdf.write_output(f'  Skipped: {summary["skipped"]}')
    vdf.write_output(f'  Failed: {summary["failed"]}')

    sys.exit(1 if summary['failed'] else 0)


if __name__ == '__main__':
    main()
