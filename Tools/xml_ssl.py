#!/usr/bin/env python3
# xml_ssl.py - vditools Citrix XML Service SSL Binder
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Binds a certificate to the Citrix Broker XML service port and enables SSL

"""
Citrix XML Service SSL Binder

StoreFront talks to Delivery Controllers over the Broker's XML service. To
move that traffic to HTTPS this tool:
1. Reads the Citrix Broker Service product GUID from the registry
2. Lists the machine certificates that can be bound
3. Binds the chosen certificate to the XML port with netsh
4. Sets XmlServicesEnableSsl (and optionally disables plain HTTP)
5. Optionally checks the served certificate and the XML endpoint

Runs against the local machine or a remote Delivery Controller.

Usage:
    python3 xml_ssl.py                                   # local controller
    python3 xml_ssl.py --controller ddc-01.corp.local --thumbprint 3F1A...
    python3 xml_ssl.py --controller ddc-01.corp.local --force --verify
    python3 xml_ssl.py --dry-run
"""

import os
import sys
import argparse
import datetime
import socket
import ssl
from dataclasses import dataclass, field
from typing import List, Optional

# Add vditools directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes

import vdifunctions as vdf

#==============================================================================
# CONFIGURATION
#==============================================================================

SCRIPT_VERSION = '1.0'

BROKER_PRODUCT_NAME = 'Citrix Broker Service'
BROKER_SERVICE = 'CitrixBrokerService'
DESKTOP_SERVER_KEY = r'HKLM\SOFTWARE\Citrix\DesktopServer'
DEFAULT_PORT = 443
BIND_ADDRESS = '0.0.0.0'

GUID_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Get-ChildItem 'HKLM:\SOFTWARE\Classes\Installer\Products' | ForEach-Object {
    $product = Get-ItemProperty -Path $_.PSPath
    if ($product.ProductName -eq '%(product)s') {
        [pscustomobject]@{ PackedCode = $_.PSChildName; ProductName = $product.ProductName }
    }
} | ConvertTo-Json -Compress
"""

CERTIFICATE_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Get-ChildItem 'Cert:\LocalMachine\My' | Select-Object Thumbprint, Subject, FriendlyName, HasPrivateKey,
    @{n='NotAfter';e={$_.NotAfter.ToUniversalTime().ToString('s', [Globalization.CultureInfo]::InvariantCulture)}},
    @{n='DnsNames';e={@($_.DnsNameList | ForEach-Object { $_.Unicode })}} |
    ConvertTo-Json -Depth 3 -Compress
"""

NFUSE_CAPABILITIES = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<!DOCTYPE NFuseProtocol SYSTEM "NFuse.dtd">'
    '<NFuseProtocol version="5.4"><RequestCapabilities></RequestCapabilities></NFuseProtocol>'
)

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass
class Certificate:
    """A certificate from Cert:\\LocalMachine\\My"""
    thumbprint: str
    subject: str
    not_after: datetime.datetime
    has_private_key: bool = False
    friendly_name: str = ''
    dns_names: List[str] = field(default_factory=list)

    def usable(self, now: datetime.datetime = None) -> bool:
        now = now or datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
        return self.has_private_key and self.not_after > now

    def describe(self) -> str:
        name = f' "{self.friendly_name}"' if self.friendly_name else ''
        dns = f' ({", ".join(self.dns_names)})' if self.dns_names else ''
        return f'{self.subject}{name}{dns} expires {self.not_after:%Y-%m-%d} [{self.thumbprint}]'


#==============================================================================
# REGISTRY GUID
#==============================================================================

def unpack_product_code(packed: str) -> str:
    """
    Convert a Windows Installer packed product code into a braced GUID

    The Installer\\Products key names store the first three GUID groups
    reversed and the last 16 digits with each byte's nibbles swapped.

    :param packed: 32 hex digits, e.g. '87654321DCBA10FE32547698BADCFE10'
    :return: e.g. '{12345678-ABCD-EF01-2345-6789ABCDEF01}'
    :raises ValueError: if packed is not 32 hex digits
    """
    code = packed.strip().strip('{}').replace('-', '')
    if len(code) != 32 or any(c not in '0123456789abcdefABCDEF' for c in code):
        raise ValueError(f'Not a packed product code: {packed}')

    first = code[0:8][::-1]
    second = code[8:12][::-1]
    third = code[12:16][::-1]
    rest = ''.join(code[i + 1] + code[i] for i in range(16, 32, 2))
    return f'{{{first}-{second}-{third}-{rest[:4]}-{rest[4:]}}}'.upper()


def get_broker_guid(server: Optional[str] = None) -> str:
    """
    Read the Citrix Broker Service product GUID

    :param server: Delivery Controller, None for this machine
    :return: braced GUID
    :raises VdiToolsError: if the Broker Service is not installed
    """
    rows = vdf.powershell_json(GUID_SCRIPT % {'product': BROKER_PRODUCT_NAME}, server)
    if not rows:
        raise vdf.VdiToolsError(f'{BROKER_PRODUCT_NAME} not found on {server or "localhost"}')
    if len(rows) > 1:
        vdf.write_output(f'WARNING: {len(rows)} {BROKER_PRODUCT_NAME} products registered; using the first')
    try:
        return unpack_product_code(rows[0]['PackedCode'])
    except ValueError as e:
        raise vdf.VdiToolsError(str(e))


#==============================================================================
# CERTIFICATES
#==============================================================================

def parse_certificates(rows: list) -> List[Certificate]:
    """Certificate rows from CERTIFICATE_SCRIPT; rows without a readable NotAfter are skipped"""
    certs = []
    for row in rows:
        try:
            not_after = datetime.datetime.strptime(row.get('NotAfter') or '', '%Y-%m-%dT%H:%M:%S')
        except ValueError:
            vdf.write_output(f'WARNING: Skipping certificate {row.get("Thumbprint")}: '
                             f'unreadable NotAfter {row.get("NotAfter")!r}')
            continue
        dns_names = row.get('DnsNames') or []
        if isinstance(dns_names, str):
            dns_names = [dns_names]
        certs.append(Certificate(
            thumbprint=(row.get('Thumbprint') or '').upper(),
            subject=row.get('Subject') or '',
            not_after=not_after,
            has_private_key=bool(row.get('HasPrivateKey')),
            friendly_name=row.get('FriendlyName') or '',
            dns_names=dns_names,
        ))
    return certs


def list_certificates(server: Optional[str] = None) -> List[Certificate]:
    """Usable (private key, not expired) machine certificates"""
    certs = parse_certificates(vdf.powershell_json(CERTIFICATE_SCRIPT, server))
    usable = [c for c in certs if c.usable()]
    skipped = len(certs) - len(usable)
    if skipped:
        vdf.write_output(f'Ignoring {skipped} certificate(s) without a private key or already expired')
    return usable


def choose_certificate(certs: List[Certificate], thumbprint: str = None) -> Certificate:
    """
    Pick the certificate to bind

    :param certs: usable certificates
    :param thumbprint: preselected thumbprint (spaces and case ignored)
    :raises VdiToolsError: on no certificates or an unknown thumbprint
    """
    if not certs:
        raise vdf.VdiToolsError('No usable certificate in LocalMachine\\My')

    if thumbprint:
        wanted = thumbprint.replace(' ', '').upper()
        for cert in certs:
            if cert.thumbprint == wanted:
                return cert
        raise vdf.VdiToolsError(f'No usable certificate with thumbprint {wanted}')

    print('Certificates:')
    index = vdf.choose_from_list([c.describe() for c in certs], 'Certificate to bind', multiple=False)
    return certs[index[0]]


#==============================================================================
# NETSH BINDING
#==============================================================================

def parse_sslcert(output: str) -> dict:
    """
    Parse 'netsh http show sslcert' output for one binding

    :return: {'IP:port': ..., 'Certificate Hash': ..., ...}, empty if none
    """
    binding = {}
    for line in output.splitlines():
        if ' : ' not in line:
            continue
        key, value = line.split(' : ', 1)
        binding[key.strip()] = value.strip()
    return binding


def get_binding(ipport: str, server: Optional[str] = None) -> dict:
    """Current SSL binding on ipport, empty dict if none"""
    result = vdf.runwincmd(f'netsh http show sslcert ipport={ipport}', server)
    if result.returncode != 0:
        return {}
    return parse_sslcert(result.stdout)


def bind_certificate(cert: Certificate, guid: str, port: int = DEFAULT_PORT,
                     server: Optional[str] = None, force: bool = False,
                     dry_run: bool = False) -> bool:
    """
    Bind the certificate to the XML service port

    An identical binding is left alone. A different binding is replaced
    only with force.

    :return: True when the port ends up bound to cert
    :raises VdiToolsError: on a conflicting binding without force
    """
    ipport = f'{BIND_ADDRESS}:{port}'
    existing = get_binding(ipport, server)
    current_hash = existing.get('Certificate Hash', '').upper()

    if current_hash == cert.thumbprint:
        vdf.write_output(f'{ipport} is already bound to {cert.thumbprint}')
        return True

    commands = []
    if current_hash:
        if not force:
            raise vdf.VdiToolsError(f'{ipport} is bound to {current_hash} '
                                    f'(app {existing.get("Application ID", "?")}); use --force to replace')
        commands.append(f'netsh http delete sslcert ipport={ipport}')
    commands.append(f'netsh http add sslcert ipport={ipport} certhash={cert.thumbprint} appid={guid}')

    for cmd in commands:
        if dry_run:
            vdf.write_output(f'Would run: {cmd}')
            continue
        result = vdf.runwincmd(cmd, server)
        if result.returncode != 0:
            vdf.write_output(f'ERROR: {cmd} failed: {(result.stdout + result.stderr).strip()}')
            return False
        vdf.write_output(f'Ran: {cmd}')

    return True


#==============================================================================
# REGISTRY FLAGS AND SERVICE
#==============================================================================

def registry_commands(disable_non_ssl: bool = False) -> list:
    commands = [f'reg add {DESKTOP_SERVER_KEY} /v XmlServicesEnableSsl /t REG_DWORD /d 1 /f']
    if disable_non_ssl:
        commands.append(f'reg add {DESKTOP_SERVER_KEY} /v XmlServicesEnableNonSsl /t REG_DWORD /d 0 /f')
    return commands


def set_registry_flags(server: Optional[str] = None, disable_non_ssl: bool = False,
                       dry_run: bool = False) -> bool:
    """Turn on SSL for the XML service (and optionally turn off HTTP)"""
    for cmd in registry_commands(disable_non_ssl):
        if dry_run:
            vdf.write_output(f'Would run: {cmd}')
            continue
        result = vdf.runwincmd(cmd, server)
        if result.returncode != 0:
            vdf.write_output(f'ERROR: {cmd} failed: {(result.stdout + result.stderr).strip()}')
            return False
        vdf.write_output(f'Ran: {cmd}')
    return True


def restart_broker(server: Optional[str] = None, dry_run: bool = False) -> bool:
    for cmd in [f'net stop {BROKER_SERVICE} /y', f'net start {BROKER_SERVICE}']:
        if dry_run:
            vdf.write_output(f'Would run: {cmd}')
            continue
        result = vdf.runwincmd(cmd, server, timeout=600)
        if result.returncode != 0:
            vdf.write_output(f'ERROR: {cmd} failed: {(result.stdout + result.stderr).strip()}')
            return False
    vdf.write_output(f'{BROKER_SERVICE} restarted')
    return True


#==============================================================================
# VERIFICATION
#==============================================================================

def get_served_thumbprint(host: str, port: int) -> str:
    """SHA-1 thumbprint of the certificate presented on host:port"""
    pem = ssl.get_server_certificate((host, port))
    cert = x509.load_pem_x509_certificate(pem.encode('ascii'))
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def check_xml_service(host: str, port: int, timeout: int = 10) -> tuple:
    """
    Send an NFuse RequestCapabilities to the XML service

    :return: (HTTP status or 0 on connection failure, True if it answered NFuse)
    """
    url = f'https://{host}:{port}/scripts/wpnbr.dll'
    try:
        response = requests.post(url, data=NFUSE_CAPABILITIES,
                                 headers={'Content-Type': 'text/xml'},
                                 verify=False, timeout=timeout)
    except requests.RequestException as e:
        vdf.write_output(f'XML service check of {url} failed: {e}')
        return 0, False
    return response.status_code, 'ResponseCapabilities' in response.text


def verify(host: str, port: int, thumbprint: str) -> bool:
    ok = True
    try:
        served = get_served_thumbprint(host, port)
    except (OSError, ValueError) as e:
        vdf.write_output(f'ERROR: Could not read certificate from {host}:{port}: {e}')
        return False

    if served == thumbprint:
        vdf.write_output(f'{host}:{port} presents {served}')
    else:
        vdf.write_output(f'ERROR: {host}:{port} presents {served}, expected {thumbprint}')
        ok = False

    status, answered = check_xml_service(host, port)
    if answered:
        vdf.write_output(f'XML service answered on https://{host}:{port} (HTTP {status})')
    else:
        vdf.write_output(f'WARNING: XML service did not answer NFuse on https://{host}:{port} (HTTP {status})')
        ok = False
    return ok


#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='vditools Citrix XML Service SSL Binder',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 xml_ssl.py
  python3 xml_ssl.py --controller ddc-01.corp.local --thumbprint 3F1A...
  python3 xml_ssl.py --controller ddc-01.corp.local --force --verify
        """
    )

    parser.add_argument('--controller', help='Delivery Controller (default [XMLSERVICE] controller, else this machine)')
    parser.add_argument('--port', type=vdf.positive_int, help=f'XML service SSL port (default {DEFAULT_PORT})')
    parser.add_argument('--thumbprint', help='Certificate thumbprint to bind (skips the menu)')
    parser.add_argument('--force', action='store_true', help='Replace an existing binding on the port')
    parser.add_argument('--disable-non-ssl', action='store_true', help='Also set XmlServicesEnableNonSsl to 0')
    parser.add_argument('--restart-broker', action='store_true', help=f'Restart {BROKER_SERVICE} afterwards')
    parser.add_argument('--verify', action='store_true', help='Check the served certificate and XML endpoint')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be done')
    parser.add_argument('--user', help='Windows admin account (default [WINDOWS] user)')
    parser.add_argument('--password', help='Windows admin password (defaults to creds.txt)')
    parser.add_argument('--config', help='Alternate config.ini')
    parser.add_argument('--version', action='version', version=f'%(prog)s {SCRIPT_VERSION}')

    args = parser.parse_args()
    vdf.init(configfile=args.config)

    vdf.write_output('=' * 60)
    vdf.write_output('  vditools Citrix XML Service SSL Binder')
    vdf.write_output(f'  Version {SCRIPT_VERSION}')
    vdf.write_output('=' * 60)

    server = args.controller or vdf.get_config_value('XMLSERVICE', 'controller') or None
    vdf.set_credentials(args.user, args.password)

    try:
        port = args.port or vdf.positive_int(vdf.get_config_value('XMLSERVICE', 'port', str(DEFAULT_PORT)))
    except ValueError as e:
        vdf.write_output(f'ERROR: [XMLSERVICE] port: {e}')
        sys.exit(1)

    try:
        guid = get_broker_guid(server)
        vdf.write_output(f'{BROKER_PRODUCT_NAME} GUID: {guid}')

        cert = choose_certificate(list_certificates(server), args.thumbprint)
        vdf.write_output(f'Certificate: {cert.describe()}')

        if not bind_certificate(cert, guid, port, server, args.force, args.dry_run):
            sys.exit(1)
    except vdf.VdiToolsError as e:
        vdf.write_output(f'ERROR: {e}')
        sys.exit(1)

    if not set_registry_flags(server, args.disable_non_ssl, args.dry_run):
        sys.exit(1)

    if args.restart_broker and not restart_broker(server, args.dry_run):
        sys.exit(1)

    if args.verify and not args.dry_run:
        host = server or socket.getfqdn()
        if not verify(host, port, cert.thumbprint):
            sys.exit(1)

    vdf.write_output('Done')


if __name__ == '__main__':
    main()
