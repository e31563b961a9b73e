#!/usr/bin/env python3
# toolbox.py - Utility Operations
# Version 1.0 - October 2026
# Credential file persistence, base64/time conversions and URL checks

import os
import sys
import base64
import binascii
import datetime
import logging
import argparse
from typing import Optional

# Add repository root to path for apifunctions access
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import apifunctions as apf

logger = logging.getLogger(__name__)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

URL_TIMEOUT = 10
EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

module_config = apf.load_module_config(os.path.dirname(os.path.abspath(__file__)))

#==============================================================================
# CREDENTIAL FILES
#==============================================================================

def save_credential(server: Optional[str], identity: Optional[str], secret=None,
                    directory: Optional[str] = None, protector: Optional[apf.SecretProtector] = None,
                    prompt=apf.prompt_for_credential) -> str:
    """
    Persist a credential file for later non-interactive use

    :param server: Server the credential belongs to (None for {identity}.xml)
    :param identity: Username; prompted when missing
    :param secret: Password (plain text or envelope); prompted when missing
    :param directory: Credential directory
    :param protector: SecretProtector (default: user key in directory)
    :param prompt: Prompt function returning (identity, secret)
    :return: Path of the written file
    """
    protector = protector or apf.SecretProtector(directory)
    if not identity or not secret:
        identity, secret = prompt(identity, server)
    if not identity:
        raise apf.MissingCredentialError('A username is required to save a credential')
    if not secret:
        raise apf.EmptySecretError(f'Empty password entered for {identity}')

    credential = apf.Credential(identity, apf.Secret.from_input(secret, protector), apf.CredentialOrigin.EXPLICIT)
    path = apf.credential_file_path(directory or protector.directory, server, identity)
    return apf.save_credential_file(credential, path, protector)


def show_credential(server: Optional[str], identity: str, directory: Optional[str] = None,
                    protector: Optional[apf.SecretProtector] = None) -> dict:
    """
    Describe a saved credential without revealing the password

    :return: {'Path', 'UserName', 'Password'} where Password is a fresh envelope
    :raises NotFoundError: no credential file exists
    """
    protector = protector or apf.SecretProtector(directory)
    path = apf.credential_file_path(directory or protector.directory, server, identity)
    if not os.path.isfile(path):
        raise apf.NotFoundError(f'No credential file at {path}', 404)
    credential = apf.load_credential_file(path, protector)
    return {
        'Path': path,
        'UserName': credential.identity,
        'Password': credential.secret.encode(protector),
    }

#==============================================================================
# CONVERSIONS
#==============================================================================

def to_base64(text: str, encoding: str = 'utf-8', urlsafe: bool = False) -> str:
    data = text.encode(encoding)
    encoded = base64.urlsafe_b64encode(data) if urlsafe else base64.b64encode(data)
    return encoded.decode('ascii')


def from_base64(value: str, encoding: str = 'utf-8', urlsafe: bool = False) -> str:
    """
    Decode base64 text, tolerating missing padding

    :raises ValueError: not valid base64
    """
    value = value.strip()
    value += '=' * (-len(value) % 4)
    try:
        data = base64.urlsafe_b64decode(value) if urlsafe else base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f'Invalid base64 input: {e}') from e
    return data.decode(encoding)


def to_unix_time(value=None, milliseconds: bool = False) -> int:
    """
    Seconds (or milliseconds) since the epoch

    :param value: datetime, ISO 8601 string, or None for now. Naive values are taken as UTC.
    """
    if value is None:
        value = datetime.datetime.now(datetime.timezone.utc)
    elif isinstance(value, str):
        value = datetime.datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)

    delta = value - EPOCH
    if milliseconds:
        return int(delta.total_seconds() * 1000)
    return int(delta.total_seconds())


def from_unix_time(value, milliseconds: bool = False) -> datetime.datetime:
    """UTC datetime for a unix timestamp"""
    seconds = float(value) / 1000 if milliseconds else float(value)
    return EPOCH + datetime.timedelta(seconds=seconds)

#==============================================================================
# URL CHECKS
#==============================================================================

def check_url(url: str, approve_all_certificates: bool = False, proxy: Optional[str] = None,
              expected_text: Optional[str] = None, timeout: int = URL_TIMEOUT) -> bool:
    """
    Test if a URL is accessible

    Certificate validation is skipped only for this request's session.

    :param url: URL to test
    :param approve_all_certificates: Skip TLS certificate validation
    :param proxy: Optional proxy URL
    :param expected_text: Text that must appear in the body
    :param timeout: Seconds
    :return: True if accessible
    """
    session = apf.build_http_session(approve_all_certificates, proxy=proxy)
    try:
        response = session.get(url, timeout=timeout)
    except Exception as e:
        logger.info(f'{url}: {e}')
        return False
    finally:
        session.close()

    if response.status_code != 200:
        logger.info(f'{url}: HTTP {response.status_code}')
        return False

    if expected_text and expected_text not in response.text:
        logger.info(f'{url}: expected text not found')
        return False

    return True

#==============================================================================
# STANDALONE EXECUTION
#==============================================================================

def run(args) -> int:
    cache = apf.VariableCache(module_config)

    if args.action == 'save-credential':
        path = save_credential(args.server, args.username, args.password, args.credential_dir)
        print(path)
        return 0

    if args.action == 'show-credential':
        if not args.username:
            raise apf.MissingValueError('--username is required for show-credential')
        for key, value in show_credential(args.server, args.username, args.credential_dir).items():
            print(f'{key}: {value}')
        return 0

    if args.value is None and args.action != 'to-unix':
        raise apf.MissingValueError(f'A value is required for {args.action}')

    if args.action == 'to-base64':
        print(to_base64(args.value, urlsafe=args.urlsafe))
    elif args.action == 'from-base64':
        print(from_base64(args.value, urlsafe=args.urlsafe))
    elif args.action == 'to-unix':
        print(to_unix_time(args.value, milliseconds=args.milliseconds))
    elif args.action == 'from-unix':
        print(from_unix_time(args.value, milliseconds=args.milliseconds).isoformat())
    elif args.action == 'test-url':
        if args.proxy:
            apf.set_proxy_settings(cache, args.proxy)
        ok = check_url(args.value, args.approve_all_certificates, apf.proxy_for_url(cache, args.value),
                      expected_text=args.expected_text)
        print(f'{args.value}: {"OK" if ok else "FAILED"}')
        return 0 if ok else 1
    else:
        raise ValueError(f'Unknown action: {args.action}')
    return 0


def main(argv=None):
    """Main entry point for standalone execution"""
    parser = argparse.ArgumentParser(description='Utility Operations')
    parser.add_argument('action', choices=['save-credential', 'show-credential', 'to-base64', 'from-base64',
                                           'to-unix', 'from-unix', 'test-url'],
                        help='Action to perform')
    parser.add_argument('value', nargs='?', default=None, help='Input value (text, timestamp or URL)')
    parser.add_argument('--server', '-s', help='Server the credential belongs to')
    parser.add_argument('--username', '-u', help='Username')
    parser.add_argument('--password', '-p', help='Password (prompted when omitted)')
    parser.add_argument('--credential-dir', default=None,
                        help=f'Credential file directory (default: {apf.credential_dir})')
    parser.add_argument('--urlsafe', action='store_true', help='URL-safe base64 alphabet')
    parser.add_argument('--milliseconds', action='store_true', help='Unix time in milliseconds')
    parser.add_argument('--proxy', help='Proxy URL for test-url')
    parser.add_argument('--expected-text', help='Text that must appear in the test-url response')
    parser.add_argument('--approve-all-certificates', '--insecure', dest='approve_all_certificates',
                        action='store_true', help='Skip TLS certificate validation for test-url')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)
    apf.set_verbose(args.verbose)
    sys.exit(apf.run_main(run, args))


if __name__ == '__main__':
    main()
