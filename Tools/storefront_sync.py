#!/usr/bin/env python3
# storefront_sync.py - vditools StoreFront Customization Replicator
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Copies per-store web customizations from one StoreFront server to another

"""
StoreFront Customization Replicator

StoreFront server group propagation does not cover every hand-edited file
under the Receiver for Web sites. This tool copies the customization items
of each store web site from a source server to a target server over the
admin share:

    \\\\<host>\\C$\\inetpub\\wwwroot\\Citrix\\<Store>Web\\custom
    \\\\<host>\\C$\\inetpub\\wwwroot\\Citrix\\<Store>Web\\contrib

Usage:
    python3 storefront_sync.py --source sf-01.corp.local --target sf-02.corp.local
    python3 storefront_sync.py --stores StoreWeb --backup
    python3 storefront_sync.py --extra receiver/images --dry-run
"""

import os
import sys
import argparse
import datetime
import ntpath
from dataclasses import dataclass
from typing import List

# Add vditools directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import smbclient
import smbclient.path
import smbclient.shutil
from smbprotocol.exceptions import SMBException

import vdifunctions as vdf

#==============================================================================
# CONFIGURATION
#==============================================================================

SCRIPT_VERSION = '1.0'

WEB_ROOT = r'C:\inetpub\wwwroot\Citrix'
STORE_WEB_SUFFIX = 'Web'
CUSTOMIZATION_ITEMS = ['custom', 'contrib']
BACKUP_FORMAT = '%Y%m%d-%H%M%S'

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass
class CopyResult:
    store: str
    item: str
    status: str  # COPIED, SKIPPED, FAILED, DRY-RUN
    message: str = ''


#==============================================================================
# FUNCTIONS
#==============================================================================

def web_root(host: str) -> str:
    return vdf.unc_path(host, WEB_ROOT)


def normalize_item(item: str) -> str:
    """Relative item path with backslashes and no leading/trailing separators"""
    return item.replace('/', '\\').strip('\\')


def discover_stores(root: str) -> List[str]:
    """
    Receiver for Web sites under a StoreFront web root

    :param root: share path of inetpub\\wwwroot\\Citrix
    :return: directory names ending in 'Web', sorted
    """
    stores = []
    for entry in smbclient.scandir(root):
        if entry.is_dir() and entry.name.endswith(STORE_WEB_SUFFIX) and entry.name != STORE_WEB_SUFFIX:
            stores.append(entry.name)
    return sorted(stores, key=str.lower)


def backup_name(path: str, now: datetime.datetime = None) -> str:
    now = now or datetime.datetime.now()
    return f'{path}.bak-{now.strftime(BACKUP_FORMAT)}'


def copy_item(source_store: str, target_store: str, item: str,
              backup: bool = False, dry_run: bool = False) -> CopyResult:
    """
    Copy one customization file or folder between store web sites

    :param source_store: share path of the source <Store>Web directory
    :param target_store: share path of the target <Store>Web directory
    :param item: relative path inside the store web site
    :return: CopyResult
    """
    store = ntpath.basename(source_store)
    src = vdf.join_path(source_store, item)
    dst = vdf.join_path(target_store, item)

    try:
        if not smbclient.path.exists(src):
            return CopyResult(store, item, 'SKIPPED', 'not present on source')
        is_dir = smbclient.path.isdir(src)
    except (OSError, SMBException, ValueError) as e:
        return CopyResult(store, item, 'FAILED', str(e))

    if dry_run:
        kind = 'folder' if is_dir else 'file'
        return CopyResult(store, item, 'DRY-RUN', f'would copy {kind} {src} -> {dst}')

    try:
        if backup and smbclient.path.exists(dst):
            saved = backup_name(dst)
            smbclient.rename(dst, saved)
            vdf.write_output(f'{store}: backed up {item} to {ntpath.basename(saved)}')

        if is_dir:
            smbclient.shutil.copytree(src, dst, dirs_exist_ok=True)
        else:
            parent = ntpath.dirname(dst)
            if not smbclient.path.isdir(parent):
                smbclient.makedirs(parent, exist_ok=True)
            smbclient.shutil.copy2(src, dst)
    except (OSError, SMBException, ValueError) as e:
        return CopyResult(store, item, 'FAILED', str(e))

    return CopyResult(store, item, 'COPIED')


def sync_store(source_root: str, target_root: str, store: str, items: List[str],
               backup: bool = False, dry_run: bool = False) -> List[CopyResult]:
    """Copy every customization item of one store web site"""
    source_store = vdf.join_path(source_root, store)
    target_store = vdf.join_path(target_root, store)

    if not smbclient.path.isdir(source_store):
        vdf.write_output(f'WARNING: {store} does not exist on the source; skipping')
        return [CopyResult(store, '*', 'SKIPPED', 'store missing on source')]

    if not smbclient.path.isdir(target_store):
        vdf.write_output(f'WARNING: {store} does not exist on the target; create the store first')
        return [CopyResult(store, '*', 'SKIPPED', 'store missing on target')]

    results = []
    for item in items:
        result = copy_item(source_store, target_store, item, backup, dry_run)
        vdf.write_output(f'{store}: {item} {result.status} {result.message}'.rstrip())
        results.append(result)
    return results


def sync_stores(source: str, target: str, stores: List[str] = None, extra: List[str] = None,
                backup: bool = False, dry_run: bool = False) -> List[CopyResult]:
    """
    Replicate customizations for the given (or all discovered) stores

    :param source: source StoreFront hostname
    :param target: target StoreFront hostname
    :param stores: store web site names, None to discover from the source
    :param extra: additional relative paths to copy per store
    :return: list of CopyResult
    """
    source_root = web_root(source)
    target_root = web_root(target)

    if not stores:
        stores = discover_stores(source_root)
        vdf.write_output(f'Found {len(stores)} store web site(s) on {source}: {", ".join(stores)}')

    items = []
    for item in CUSTOMIZATION_ITEMS + (extra or []):
        item = normalize_item(item)
        if item and item.lower() not in [i.lower() for i in items]:
            items.append(item)

    results = []
    for store in stores:
        results.extend(sync_store(source_root, target_root, store, items, backup, dry_run))
    return results


def report(results: List[CopyResult]):
    table = vdf.make_table(['Store', 'Item', 'Status', 'Message'])
    for r in results:
        table.add_row([r.store, r.item, r.status, r.message])
    vdf.write_table(table)


#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='vditools StoreFront Customization Replicator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 storefront_sync.py --source sf-01.corp.local --target sf-02.corp.local
  python3 storefront_sync.py --stores StoreWeb --backup
  python3 storefront_sync.py --extra receiver/images --dry-run
        """
    )

    parser.add_argument('--source', help='StoreFront server to copy from (default [STOREFRONT] source)')
    parser.add_argument('--target', help='StoreFront server to copy to (default [STOREFRONT] target)')
    parser.add_argument('--stores', nargs='+', help='Store web sites, e.g. StoreWeb (default: all on source)')
    parser.add_argument('--extra', nargs='+', help='Additional relative paths to copy per store')
    parser.add_argument('--backup', action='store_true', help='Rename existing target items before copying')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be copied')
    parser.add_argument('--user', help='Windows admin account (default [WINDOWS] user)')
    parser.add_argument('--password', help='Windows admin password (defaults to creds.txt)')
    parser.add_argument('--config', help='Alternate config.ini')
    parser.add_argument('--version', action='version', version=f'%(prog)s {SCRIPT_VERSION}')

    args = parser.parse_args()
    vdf.init(configfile=args.config)
    vdf.set_credentials(args.user, args.password)

    vdf.write_output('=' * 60)
    vdf.write_output('  vditools StoreFront Customization Replicator')
    vdf.write_output(f'  Version {SCRIPT_VERSION}')
    vdf.write_output('=' * 60)

    source = args.source or vdf.get_config_value('STOREFRONT', 'source')
    target = args.target or vdf.get_config_value('STOREFRONT', 'target')
    if not source or not target:
        vdf.write_output('ERROR: Both --source and --target (or [STOREFRONT] source/target) are required')
        sys.exit(1)
    if source.lower() == target.lower():
        vdf.write_output('ERROR: Source and target are the same server')
        sys.exit(1)

    stores = args.stores or vdf.get_config_list('STOREFRONT', 'stores')
    extra = args.extra or vdf.get_config_list('STOREFRONT', 'extra_items')

    for host in (source, target):
        if not vdf.register_smb_session(host):
            sys.exit(1)

    try:
        results = sync_stores(source, target, stores, extra, args.backup, args.dry_run)
    except (OSError, SMBException, ValueError) as e:
        vdf.write_output(f'ERROR: Could not read {web_root(source)}: {e}')
        sys.exit(1)

    report(results)

    copied = sum(1 for r in results if r.status == 'COPIED')
    skipped = sum(1 for r in results if r.status == 'SKIPPED')
    failed = sum(1 for r in results if r.status == 'FAILED')
    vdf.write_output(f'Copied: {copied}  Skipped: {skipped}  Failed: {failed}')

    sys.exit(1 if failed else 0)


if __name__ == '__main__':
    main()
