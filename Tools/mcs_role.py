#!/usr/bin/env python3
# mcs_role.py - vditools vSphere Role Configurator for Citrix MCS
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Creates or extends a vSphere role with the privileges Citrix needs

"""
vSphere Role Configurator for Citrix Machine Creation Services

Citrix documents the vSphere privileges its hosting connection needs as
groups: power management, MCS provisioning, image update, and so on. This
tool:
1. Connects to vCenter
2. Lets the operator pick the privilege groups the connection needs
3. Creates the role, or adds the missing privileges to an existing role
4. Optionally grants the role to a user or group on an inventory object

Usage:
    python3 mcs_role.py --vcenter vc-01.corp.local
    python3 mcs_role.py --sets power mcs delete --role "Citrix MCS"
    python3 mcs_role.py --sets all --principal CORP\\svc-citrix
    python3 mcs_role.py --list-sets
"""

import os
import sys
import argparse

# Add vditools directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pyVmomi import vim, vmodl

import vdifunctions as vdf

#==============================================================================
# CONFIGURATION
#==============================================================================

SCRIPT_VERSION = '1.0'
DEFAULT_ROLE = 'Citrix MCS'

# Always part of a vSphere role; vCenter adds them itself
IMPLICIT_PRIVILEGES = {'System.Anonymous', 'System.Read', 'System.View'}

POWER_PRIVILEGES = [
    'VirtualMachine.Interact.PowerOff',
    'VirtualMachine.Interact.PowerOn',
    'VirtualMachine.Interact.Reset',
    'VirtualMachine.Interact.Suspend',
]

PRIVILEGE_SETS = [
    ('connection', 'Add connections and resources', [
        'System.Anonymous',
        'System.Read',
        'System.View',
    ]),
    ('power', 'Power management', POWER_PRIVILEGES + [
        'Datastore.Browse',
    ]),
    ('mcs', 'Machine Creation Services', POWER_PRIVILEGES + [
        'Datastore.AllocateSpace',
        'Datastore.Browse',
        'Datastore.FileManagement',
        'Network.Assign',
        'Resource.AssignVMToPool',
        'VirtualMachine.Config.AddExistingDisk',
        'VirtualMachine.Config.AddNewDisk',
        'VirtualMachine.Config.AdvancedConfig',
        'VirtualMachine.Config.CPUCount',
        'VirtualMachine.Config.EditDevice',
        'VirtualMachine.Config.Memory',
        'VirtualMachine.Config.RemoveDisk',
        'VirtualMachine.Config.Settings',
        'VirtualMachine.Inventory.Create',
        'VirtualMachine.Inventory.CreateFromExisting',
        'VirtualMachine.Inventory.Delete',
        'VirtualMachine.Provisioning.Clone',
        'VirtualMachine.Provisioning.CloneTemplate',
        'VirtualMachine.Provisioning.DeployTemplate',
        'VirtualMachine.State.CreateSnapshot',
        'VirtualMachine.State.RemoveSnapshot',
        'VirtualMachine.State.RevertToSnapshot',
    ]),
    ('image', 'Image update and rollback', [
        'Datastore.AllocateSpace',
        'Datastore.Browse',
        'Datastore.FileManagement',
        'Network.Assign',
        'Resource.AssignVMToPool',
        'VirtualMachine.Config.AddExistingDisk',
        'VirtualMachine.Config.AddNewDisk',
        'VirtualMachine.Config.AdvancedConfig',
        'VirtualMachine.Config.RemoveDisk',
        'VirtualMachine.Interact.PowerOff',
        'VirtualMachine.Interact.PowerOn',
        'VirtualMachine.Interact.Reset',
        'VirtualMachine.Inventory.Create',
        'VirtualMachine.Inventory.CreateFromExisting',
        'VirtualMachine.Inventory.Delete',
        'VirtualMachine.Provisioning.Clone',
    ]),
    ('delete', 'Delete provisioned machines', [
        'Datastore.Browse',
        'Datastore.FileManagement',
        'VirtualMachine.Config.RemoveDisk',
        'VirtualMachine.Interact.PowerOff',
        'VirtualMachine.Inventory.Delete',
    ]),
    ('pvs', 'Provisioning Services', POWER_PRIVILEGES + [
        'VirtualMachine.Config.AddRemoveDevice',
        'VirtualMachine.Config.CPUCount',
        'VirtualMachine.Config.Memory',
        'VirtualMachine.Config.Settings',
        'VirtualMachine.Provisioning.Clone',
        'VirtualMachine.Provisioning.CloneTemplate',
        'VirtualMachine.Provisioning.DeployTemplate',
    ]),
    ('storage', 'Storage profile (vSAN)', [
        'StorageProfile.View',
    ]),
    ('tags', 'Tags', [
        'InventoryService.Tagging.AttachTag',
        'InventoryService.Tagging.CreateTag',
        'InventoryService.Tagging.DeleteTag',
    ]),
    ('vtpm', 'vTPM / cryptographic operations', [
        'Cryptographer.Access',
        'Cryptographer.AddDisk',
        'Cryptographer.Clone',
        'Cryptographer.Encrypt',
        'Cryptographer.EncryptNew',
        'Cryptographer.ReadKeyServersInfo',
    ]),
]

#==============================================================================
# PRIVILEGE SETS
#==============================================================================

def resolve_sets(names: list) -> list:
    """
    Turn operator input into privilege set keys

    :param names: set keys, 1-based menu numbers or 'all'
    :return: set keys in menu order
    :raises ValueError: on an unknown name
    """
    keys = [key for key, _, _ in PRIVILEGE_SETS]
    if any(str(name).lower() == 'all' for name in names):
        return keys

    chosen = set()
    for name in names:
        text = str(name).strip().lower()
        if text.isdigit():
            number = int(text)
            if number < 1 or number > len(keys):
                raise ValueError(f'Privilege set {number} is out of range 1-{len(keys)}')
            chosen.add(keys[number - 1])
        elif text in keys:
            chosen.add(text)
        else:
            raise ValueError(f'Unknown privilege set: {name} (choose from {", ".join(keys)})')
    return [key for key in keys if key in chosen]


def build_privileges(set_keys: list) -> list:
    """Sorted union of the chosen sets without the implicit System privileges"""
    privileges = set()
    for key, _, privs in PRIVILEGE_SETS:
        if key in set_keys:
            privileges.update(privs)
    return sorted(privileges - IMPLICIT_PRIVILEGES)


def choose_sets() -> list:
    """Interactive privilege set menu"""
    print('Privilege sets:')
    items = [f'{title} ({key})' for key, title, _ in PRIVILEGE_SETS]
    indices = vdf.choose_from_list(items, 'Select sets (e.g. 1,3,5 or 2-4 or all)')
    return [PRIVILEGE_SETS[i][0] for i in indices]


def list_sets():
    """Print every privilege set with its privileges"""
    table = vdf.make_table(['Set', 'Title', 'Privileges'])
    for key, title, privs in PRIVILEGE_SETS:
        table.add_row([key, title, '\n'.join(privs)])
    vdf.write_table(table)


#==============================================================================
# VSPHERE ROLE OPERATIONS
#==============================================================================

def get_role(auth_mgr, name: str):
    """
    Look up a role by name (case-insensitive)

    :param auth_mgr: vim.AuthorizationManager
    :return: vim.AuthorizationManager.Role or None
    """
    for role in auth_mgr.roleList:
        if role.name.lower() == name.lower():
            return role
    return None


def filter_supported(auth_mgr, privileges: list) -> tuple:
    """
    Split privileges into those this vCenter knows and those it doesn't

    Privilege ids differ between vSphere releases.

    :return: (supported, unsupported) lists
    """
    known = {p.privId for p in auth_mgr.privilegeList}
    supported = [p for p in privileges if p in known]
    unsupported = [p for p in privileges if p not in known]
    return supported, unsupported


def ensure_role(auth_mgr, name: str, privileges: list, dry_run: bool = False) -> tuple:
    """
    Create the role or add missing privileges to it

    Existing privileges are never removed.

    :param auth_mgr: vim.AuthorizationManager
    :param name: role name
    :param privileges: privileges the role must have
    :param dry_run: If True, don't make changes
    :return: (role id or None in dry run of a new role, list of added privileges)
    """
    role = get_role(auth_mgr, name)

    if role is None:
        if dry_run:
            vdf.write_output(f'Would create role {name} with {len(privileges)} privilege(s)')
            return None, list(privileges)
        role_id = auth_mgr.AddAuthorizationRole(name=name, privIds=list(privileges))
        vdf.write_output(f'Created role {name} (id {role_id}) with {len(privileges)} privilege(s)')
        return role_id, list(privileges)

    current = set(role.privilege)
    added = [p for p in privileges if p not in current]
    if not added:
        vdf.write_output(f'Role {role.name} already has every selected privilege')
        return role.roleId, []

    if dry_run:
        vdf.write_output(f'Would add {len(added)} privilege(s) to role {role.name}')
        return role.roleId, added

    auth_mgr.UpdateAuthorizationRole(roleId=role.roleId, newName=role.name,
                                     privIds=sorted(current | set(added)))
    vdf.write_output(f'Added {len(added)} privilege(s) to role {role.name}')
    return role.roleId, added


def assign_role(auth_mgr, entity, role_id, principal: str, group: bool = False,
                propagate: bool = True, dry_run: bool = False) -> bool:
    """
    Grant a role to a user or group on an inventory object

    :return: True if the permission was set (or would be in a dry run)
    """
    if dry_run:
        vdf.write_output(f'Would grant role to {principal} on {entity.name} (propagate={propagate})')
        return True

    permission = vim.AuthorizationManager.Permission(
        principal=principal,
        group=group,
        roleId=role_id,
        propagate=propagate
    )
    try:
        auth_mgr.SetEntityPermissions(entity=entity, permission=[permission])
    except vim.fault.UserNotFound:
        vdf.write_output(f'ERROR: {principal} not found by vCenter')
        return False
    vdf.write_output(f'Granted role to {principal} on {entity.name} (propagate={propagate})')
    return True


#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='vditools vSphere Role Configurator for Citrix MCS',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 mcs_role.py --vcenter vc-01.corp.local
  python3 mcs_role.py --sets power mcs delete --role "Citrix MCS"
  python3 mcs_role.py --sets all --principal CORP\\svc-citrix
  python3 mcs_role.py --list-sets
        """
    )

    parser.add_argument('--vcenter', help='vCenter hostname (default [VSPHERE] vcenter)')
    parser.add_argument('--user', help=f'vCenter user (default [VSPHERE] user or {vdf.vcuser})')
    parser.add_argument('--password', help='vCenter password (defaults to creds.txt)')
    parser.add_argument('--role', help=f'Role name (default [VSPHERE] role or "{DEFAULT_ROLE}")')
    parser.add_argument('--sets', nargs='+', help='Privilege sets by key or number, or all')
    parser.add_argument('--principal', help='User or group to grant the role to')
    parser.add_argument('--group', action='store_true', help='The principal is a group')
    parser.add_argument('--entity', help='Inventory object to grant on (default root folder)')
    parser.add_argument('--no-propagate', action='store_true', help='Do not propagate to children')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be done')
    parser.add_argument('--list-sets', action='store_true', help='List privilege sets and exit')
    parser.add_argument('--config', help='Alternate config.ini')
    parser.add_argument('--version', action='version', version=f'%(prog)s {SCRIPT_VERSION}')

    args = parser.parse_args()
    vdf.init(configfile=args.config)

    if args.list_sets:
        list_sets()
        sys.exit(0)

    vdf.write_output('=' * 60)
    vdf.write_output('  vditools vSphere Role Configurator for Citrix MCS')
    vdf.write_output(f'  Version {SCRIPT_VERSION}')
    vdf.write_output('=' * 60)

    vcenter = args.vcenter or vdf.get_config_value('VSPHERE', 'vcenter')
    if not vcenter:
        vdf.write_output('ERROR: No vCenter given (--vcenter or [VSPHERE] vcenter)')
        sys.exit(1)
    user = args.user or vdf.get_config_value('VSPHERE', 'user', vdf.vcuser)
    role_name = args.role or vdf.get_config_value('VSPHERE', 'role', DEFAULT_ROLE)

    try:
        set_keys = resolve_sets(args.sets) if args.sets else choose_sets()
    except ValueError as e:
        vdf.write_output(f'ERROR: {e}')
        sys.exit(1)

    vdf.write_output(f'Privilege sets: {", ".join(set_keys)}')
    privileges = build_privileges(set_keys)

    si = vdf.connect_vc(vcenter, user, args.password)
    if si is None:
        sys.exit(1)

    try:
        content = si.RetrieveContent()
        auth_mgr = content.authorizationManager

        privileges, unsupported = filter_supported(auth_mgr, privileges)
        for priv in unsupported:
            vdf.write_output(f'WARNING: {vcenter} does not know privilege {priv}; skipping')

        role_id, added = ensure_role(auth_mgr, role_name, privileges, args.dry_run)
        for priv in added:
            vdf.write_output(f'  + {priv}')

        if args.principal:
            if args.entity:
                entity = vdf.get_entity(content, args.entity)
                if entity is None:
                    vdf.write_output(f'ERROR: Inventory object {args.entity} not found')
                    sys.exit(1)
            else:
                entity = content.rootFolder
            if not assign_role(auth_mgr, entity, role_id, args.principal, args.group,
                               not args.no_propagate, args.dry_run):
                sys.exit(1)
    except vmodl.MethodFault as e:
        vdf.write_output(f'ERROR: vCenter rejected the change: {e.msg}')
        sys.exit(1)
    finally:
        vdf.disconnect_vcenters()

    vdf.write_output('Done')


if __name__ == '__main__':
    main()
