#!/usr/bin/env python3
# cyberark.py - CyberArk PasswordVault API Operations
# Version 1.0 - October 2026
# Logon/logoff, account lookup, account search and password retrieval

"""
CyberArk PasswordVault REST API Module

Authentication:
  - Endpoint: /PasswordVault/API/auth/{method}/Logon
  - Methods: CyberArk, LDAP, RADIUS, Windows
  - The response body is the session token as a JSON string; it is sent
    back verbatim in the Authorization header.
  - Logoff: /PasswordVault/API/Auth/Logoff

Accounts:
  - GET  /PasswordVault/API/Accounts/{id}
  - GET  /PasswordVault/API/Accounts?search=..&filter=safeName eq ..
  - POST /PasswordVault/API/Accounts/{id}/Password/Retrieve
"""

import os
import sys
import json
import logging
import argparse
from typing import Dict, List, Optional

# Add repository root to path for apifunctions access
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import apifunctions as apf

logger = logging.getLogger(__name__)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

NAMESPACE = 'CyberArk'
API_BASE = '/PasswordVault/API'
AUTH_METHODS = ('CyberArk', 'LDAP', 'RADIUS', 'Windows')
DEFAULT_AUTH_METHOD = 'CyberArk'
SEARCH_PAGE_SIZE = 100

module_config = apf.load_module_config(os.path.dirname(os.path.abspath(__file__)))

#==============================================================================
# CONNECTOR
#==============================================================================

class VaultConnector(apf.SessionConnector):
    """Session connector for the PasswordVault REST API"""

    namespace = NAMESPACE
    token_key = 'AuthorizationToken'

    def __init__(self, cache=None, resolver=None, protector=None, auth_method: Optional[str] = None):
        if cache is None:
            cache = apf.VariableCache(module_config)
        super().__init__(cache, resolver, protector)
        self.auth_method = self.cache.sync(NAMESPACE, 'AuthMethod', auth_method, default=DEFAULT_AUTH_METHOD)
        if self.auth_method not in AUTH_METHODS:
            raise ValueError(f'Unsupported authentication method: {self.auth_method}')

    def _login(self, credential: apf.Credential) -> str:
        url = f'{self.base_url}{API_BASE}/auth/{self.auth_method}/Logon'
        payload = {
            'username': credential.identity,
            'password': credential.secret.reveal(),
            'concurrentSession': True,
        }
        response = self.session.post(url, json=payload, timeout=apf.REQUEST_TIMEOUT,
                                     headers={'Content-Type': 'application/json'})
        apf.raise_for_response(response)

        try:
            token = response.json()
        except ValueError:
            token = response.text
        if isinstance(token, dict):
            token = token.get('CyberArkLogonResult') or token.get('token')
        if not token:
            raise apf.HttpError('No token in logon response', response.status_code, url)
        return str(token).strip().strip('"')

    def _auth_headers(self, token: apf.SessionToken) -> Dict[str, str]:
        return {
            'Authorization': token.header_value(),
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def disconnect(self):
        """Log off the cached session, if any"""
        token = self.cache.get(NAMESPACE, self.token_key)
        if token is None:
            return False
        try:
            self.request('POST', f'{API_BASE}/Auth/Logoff', token=token)
            logger.info(f'Logged off {token.server}')
        finally:
            self.cache.set(NAMESPACE, self.token_key, None)
        return True

#==============================================================================
# ACCOUNT OPERATIONS
#==============================================================================

def get_account(connector: VaultConnector, account_id: str) -> dict:
    """
    Get a single account by id

    :param connector: Connected VaultConnector
    :param account_id: Account id (e.g. '12_3')
    :return: Account dict
    :raises NotFoundError: unknown account id
    """
    response = connector.request('GET', f'{API_BASE}/Accounts/{account_id}')
    return response.json()


def get_accounts(connector: VaultConnector, account_ids: List[str]) -> dict:
    """
    Get several accounts, continuing past individual failures

    :param connector: Connected VaultConnector
    :param account_ids: Account ids
    :return: {'Succeeded': [account, ...], 'Failed': [{'Id': id, 'Error': msg}, ...]}
    """
    result = {'Succeeded': [], 'Failed': []}
    for account_id in account_ids:
        try:
            result['Succeeded'].append(get_account(connector, account_id))
        except Exception as e:
            message = apf.get_innermost_message(e)
            logger.warning(f'Account {account_id}: {message}')
            result['Failed'].append({'Id': account_id, 'Error': message})
    return result


def search_accounts(connector: VaultConnector, search: Optional[str] = None, safe: Optional[str] = None,
                    page_size: int = SEARCH_PAGE_SIZE, max_pages: Optional[int] = None) -> List[dict]:
    """
    Search accounts, following nextLink until the vault reports no more pages

    :param connector: Connected VaultConnector
    :param search: Keywords matched against account properties
    :param safe: Restrict to one safe
    :param page_size: Accounts per request
    :param max_pages: Optional page guard
    :return: List of account dicts
    """
    params = {'limit': page_size}
    if search:
        params['search'] = search
    if safe:
        params['filter'] = f'safeName eq {safe}'

    def fetch_page(page):
        page_params = dict(params, offset=(page - 1) * page_size)
        body = connector.request('GET', f'{API_BASE}/Accounts', params=page_params).json()
        return body.get('value', []), bool(body.get('nextLink'))

    return apf.collect_pages(fetch_page, max_pages=max_pages)


def get_account_password(connector: VaultConnector, account_id: str, reason: Optional[str] = None) -> apf.Secret:
    """
    Retrieve the password of an account

    :param connector: Connected VaultConnector
    :param account_id: Account id
    :param reason: Reason recorded in the vault audit
    :return: Secret holding the password
    """
    payload = {'reason': reason} if reason else {}
    response = connector.request('POST', f'{API_BASE}/Accounts/{account_id}/Password/Retrieve', json=payload)
    try:
        value = response.json()
    except ValueError:
        value = response.text
    return apf.Secret(str(value).strip().strip('"'), apf.SecretKind.PLAINTEXT)

#==============================================================================
# STANDALONE EXECUTION
#==============================================================================

def _print_result(result, as_json: bool):
    if as_json:
        print(json.dumps(result, indent=2, default=str))
    elif isinstance(result, list):
        for item in result:
            print(f"{item.get('id', '')}\t{item.get('safeName', '')}\t{item.get('userName', '')}\t{item.get('address', '')}")
    elif isinstance(result, dict):
        for key, value in result.items():
            print(f'{key}: {value}')
    else:
        print(result)


def run(args) -> int:
    connector = VaultConnector(protector=apf.SecretProtector(args.credential_dir), auth_method=args.auth_method)
    if args.proxy:
        apf.set_proxy_settings(connector.cache, args.proxy)
    token = connector.connect(**apf.connection_kwargs(args))
    created_session = not args.token

    if args.action == 'logon':
        print(token.value.encode(connector.protector))
        return 0

    if args.action == 'get':
        if not args.account_id:
            raise apf.MissingValueError('--account-id is required for get')
        if len(args.account_id) == 1:
            _print_result(get_account(connector, args.account_id[0]), args.as_json)
            return 0
        result = get_accounts(connector, args.account_id)
        _print_result(result, args.as_json)
        return 1 if result['Failed'] else 0

    if args.action == 'search':
        _print_result(search_accounts(connector, args.search, args.safe), args.as_json)
        return 0

    if args.action == 'password':
        if not args.account_id:
            raise apf.MissingValueError('--account-id is required for password')
        try:
            password = get_account_password(connector, args.account_id[0], args.reason)
            if args.show:
                print(password.reveal())
            else:
                print(password.encode(connector.protector))
        finally:
            if created_session:
                try:
                    connector.disconnect()
                except Exception as e:
                    logger.warning(f'Logoff from {connector.server} failed: {apf.get_innermost_message(e)}')
        return 0

    raise ValueError(f'Unknown action: {args.action}')


def main(argv=None):
    """Main entry point for standalone execution"""
    parser = argparse.ArgumentParser(description='CyberArk PasswordVault Operations')
    parser.add_argument('action', choices=['logon', 'get', 'search', 'password'],
                        help='Action to perform')
    apf.add_connection_arguments(parser)
    parser.add_argument('--auth-method', choices=AUTH_METHODS, default=None,
                        help=f'Logon method (default: {DEFAULT_AUTH_METHOD})')
    parser.add_argument('--account-id', nargs='+', help='Account id(s)')
    parser.add_argument('--search', help='Search keywords')
    parser.add_argument('--safe', help='Safe name filter')
    parser.add_argument('--reason', help='Reason for password retrieval')
    parser.add_argument('--show', action='store_true',
                        help='Print the retrieved password in clear text instead of an envelope')

    args = parser.parse_args(argv)
    apf.set_verbose(args.verbose)
    sys.exit(apf.run_main(run, args))


if __name__ == '__main__':
    main()
