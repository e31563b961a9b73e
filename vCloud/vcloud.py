#!/usr/bin/env python3
# vcloud.py - vCloud Director API Operations
# Version 1.0 - October 2026
# Session login, paged record queries and URN/href helpers

"""
vCloud Director API Integration Module

Supports two login paths:
  CloudAPI (default):
    - Endpoint: /cloudapi/1.0.0/sessions (tenant) or
      /cloudapi/1.0.0/sessions/provider (System org)
    - Auth: HTTP Basic with user@org
    - Token: X-VMWARE-VCLOUD-ACCESS-TOKEN response header, sent as Bearer

  Legacy (--legacy):
    - Endpoint: /api/sessions
    - Token: x-vcloud-authorization response header, sent back as-is

Queries use the XML query service:
  GET /api/query?type={type}&format=records&page={n}&pageSize={size}
and follow <Link rel="nextPage"> until it disappears.
"""

import os
import sys
import json
import logging
import argparse
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

from requests.auth import HTTPBasicAuth

# Add repository root to path for apifunctions access
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import apifunctions as apf

logger = logging.getLogger(__name__)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

NAMESPACE = 'vCloud'
API_VERSION = '36.0'
DEFAULT_ORG = 'System'
QUERY_PAGE_SIZE = 128

ACCESS_TOKEN_HEADER = 'X-VMWARE-VCLOUD-ACCESS-TOKEN'
LEGACY_TOKEN_HEADER = 'x-vcloud-authorization'

module_config = apf.load_module_config(os.path.dirname(os.path.abspath(__file__)))

#==============================================================================
# URN AND HREF HELPERS
#==============================================================================

def parse_urn(urn: str) -> Tuple[str, str]:
    """
    Split a vCloud URN into entity type and id

    :param urn: e.g. 'urn:vcloud:vm:3d1a5b6c-...'
    :return: ('vm', '3d1a5b6c-...')
    :raises ValueError: not a vCloud URN
    """
    parts = (urn or '').strip().split(':')
    if len(parts) != 4 or parts[0] != 'urn' or parts[1] != 'vcloud' or not parts[2] or not parts[3]:
        raise ValueError(f'Not a vCloud URN: {urn}')
    return parts[2], parts[3]


def id_from_href(href: str) -> str:
    """Last path segment of an API href (e.g. 'vm-3d1a5b6c-...')"""
    segment = (href or '').rstrip('/').split('/')[-1]
    if not segment:
        raise ValueError(f'No id in href: {href}')
    return segment


def urn_from_href(href: str) -> str:
    """
    Build a URN from a legacy href

    '/api/vApp/vm-3d1a...' -> 'urn:vcloud:vm:3d1a...'
    """
    segment = id_from_href(href)
    if '-' not in segment:
        raise ValueError(f'No typed id in href: {href}')
    entity_type, entity_id = segment.split('-', 1)
    return f'urn:vcloud:{entity_type}:{entity_id}'


def _local_name(tag: str) -> str:
    return tag.split('}', 1)[1] if tag.startswith('{') else tag

#==============================================================================
# CONNECTOR
#==============================================================================

class CloudConnector(apf.SessionConnector):
    """Session connector for the vCloud API"""

    namespace = NAMESPACE
    token_key = 'SessionToken'

    def __init__(self, cache=None, resolver=None, protector=None,
                 org: Optional[str] = None, api_version: Optional[str] = None, legacy: bool = False):
        if cache is None:
            cache = apf.VariableCache(module_config)
        super().__init__(cache, resolver, protector)
        self.org = self.cache.sync(NAMESPACE, 'Org', org, default=DEFAULT_ORG)
        self.api_version = self.cache.sync(NAMESPACE, 'ApiVersion', api_version, default=API_VERSION)
        self.legacy = legacy

    def login_identity(self, identity: str) -> str:
        """user -> user@org, identities that already name an org pass through"""
        return identity if '@' in identity else f'{identity}@{self.org}'

    def _login(self, credential: apf.Credential) -> str:
        auth = HTTPBasicAuth(self.login_identity(credential.identity), credential.secret.reveal())

        if self.legacy:
            url = f'{self.base_url}/api/sessions'
            headers = {'Accept': f'application/*+xml;version={self.api_version}'}
            token_header = LEGACY_TOKEN_HEADER
        else:
            path = '/cloudapi/1.0.0/sessions/provider' if self.org == DEFAULT_ORG else '/cloudapi/1.0.0/sessions'
            url = f'{self.base_url}{path}'
            headers = {'Accept': f'application/json;version={self.api_version}'}
            token_header = ACCESS_TOKEN_HEADER

        response = self.session.post(url, auth=auth, headers=headers, timeout=apf.REQUEST_TIMEOUT)
        apf.raise_for_response(response)

        token = response.headers.get(token_header)
        if not token:
            raise apf.HttpError(f'No {token_header} header in login response', response.status_code, url)
        return token

    def _auth_headers(self, token: apf.SessionToken) -> Dict[str, str]:
        headers = {'Accept': f'application/*+xml;version={self.api_version}'}
        if self.legacy:
            headers[LEGACY_TOKEN_HEADER] = token.header_value()
        else:
            headers['Authorization'] = f'Bearer {token.header_value()}'
        return headers

#==============================================================================
# QUERY OPERATIONS
#==============================================================================

def parse_query_page(xml_text: str) -> Tuple[List[dict], bool]:
    """
    Parse one QueryResultRecords page

    :param xml_text: Response body
    :return: (records as attribute dicts, has next page)
    """
    root = ET.fromstring(xml_text)
    records = []
    has_next = False
    for child in root:
        name = _local_name(child.tag)
        if name == 'Link':
            if child.get('rel') == 'nextPage':
                has_next = True
        elif name.endswith('Record'):
            record = dict(child.attrib)
            record.setdefault('recordType', name)
            records.append(record)
    return records, has_next


def query(connector: CloudConnector, query_type: str, filter: Optional[str] = None,
          page_size: int = QUERY_PAGE_SIZE, max_pages: Optional[int] = None,
          fields: Optional[List[str]] = None) -> List[dict]:
    """
    Run a typed query and aggregate every page

    :param connector: Connected CloudConnector
    :param query_type: Query type (vm, vApp, adminOrgVdc, ...)
    :param filter: FIQL filter, e.g. 'name==web*'
    :param page_size: Records per page
    :param max_pages: Optional page guard
    :param fields: Restrict returned attributes
    :return: Records from all pages in page order
    """
    params = {'type': query_type, 'format': 'records', 'pageSize': page_size}
    if filter:
        params['filter'] = filter
    if fields:
        params['fields'] = ','.join(fields)

    def fetch_page(page):
        response = connector.request('GET', '/api/query', params=dict(params, page=page))
        return parse_query_page(response.text)

    records = apf.collect_pages(fetch_page, max_pages=max_pages)
    logger.info(f'Query {query_type} returned {len(records)} records')
    return records


def get_entity(connector: CloudConnector, urn: str) -> dict:
    """
    Resolve a URN through the entity resolver

    :param connector: Connected CloudConnector
    :param urn: Entity URN
    :return: {'id', 'type', 'name', 'href'}
    :raises NotFoundError: the URN does not resolve
    """
    entity_type, _ = parse_urn(urn)
    response = connector.request('GET', f'/api/entity/{urn}')
    root = ET.fromstring(response.text)

    href = None
    for link in root:
        if _local_name(link.tag) == 'Link' and link.get('rel') == 'alternate':
            href = link.get('href')
            break
    if href is None:
        raise apf.NotFoundError(f'Entity {urn} has no alternate link', 404)

    return {'id': urn, 'type': entity_type, 'name': root.get('name', ''), 'href': href}

#==============================================================================
# STANDALONE EXECUTION
#==============================================================================

def run(args) -> int:
    connector = CloudConnector(protector=apf.SecretProtector(args.credential_dir),
                               org=args.org, api_version=args.api_version, legacy=args.legacy)
    if args.proxy:
        apf.set_proxy_settings(connector.cache, args.proxy)
    token = connector.connect(**apf.connection_kwargs(args))

    if args.action == 'login':
        print(token.value.encode(connector.protector))
        return 0

    if args.action == 'query':
        if not args.type:
            raise apf.MissingValueError('--type is required for query')
        records = query(connector, args.type, args.filter, page_size=args.page_size, max_pages=args.max_pages)
        if args.as_json:
            print(json.dumps(records, indent=2))
        else:
            for record in records:
                print(f"{record.get('name', '')}\t{record.get('href', '')}")
        return 0

    if args.action == 'entity':
        if not args.urn:
            raise apf.MissingValueError('--urn is required for entity')
        entity = get_entity(connector, args.urn)
        print(json.dumps(entity, indent=2) if args.as_json else f"{entity['name']}\t{entity['href']}")
        return 0

    raise ValueError(f'Unknown action: {args.action}')


def main(argv=None):
    """Main entry point for standalone execution"""
    parser = argparse.ArgumentParser(description='vCloud Director Operations')
    parser.add_argument('action', choices=['login', 'query', 'entity'], help='Action to perform')
    apf.add_connection_arguments(parser)
    parser.add_argument('--org', default=None, help=f'Organization (default: {DEFAULT_ORG})')
    parser.add_argument('--api-version', default=None, help=f'API version (default: {API_VERSION})')
    parser.add_argument('--legacy', action='store_true', help='Use the legacy /api/sessions login')
    parser.add_argument('--type', help='Query type (vm, vApp, adminOrgVdc, ...)')
    parser.add_argument('--filter', help='Query filter, e.g. name==web*')
    parser.add_argument('--page-size', type=int, default=QUERY_PAGE_SIZE, help='Records per page')
    parser.add_argument('--max-pages', type=int, default=None, help='Stop after this many pages')
    parser.add_argument('--urn', help='Entity URN for the entity action')

    args = parser.parse_args(argv)
    apf.set_verbose(args.verbose)
    sys.exit(apf.run_main(run, args))


if __name__ == '__main__':
    main()
