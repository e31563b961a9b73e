# apifunctions.py - API Session Tools Core Functions Library
# Version 1.0 - October 2026
# Credential resolution, session caching and HTTP helpers shared by the
# CyberArk, vCloud, vSphere and Utils script families

import os
import sys
import stat
import base64
import binascii
import datetime
import getpass
import secrets
import logging
import traceback
import xml.etree.ElementTree as ET
from configparser import ConfigParser
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests
import urllib3
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Default logging level is WARNING (other levels are DEBUG, INFO, ERROR and CRITICAL)
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# Certificate validation is opted out per session, only the warning is silenced here
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

#==============================================================================
# STATIC VARIABLES
#==============================================================================

home = os.path.expanduser('~')
credential_dir = os.environ.get('API_CREDENTIAL_DIR', os.path.join(home, '.apicredentials'))
key_filename = '.credential-key'
configname = 'config.ini'
shared_config_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'Utils')

ENVELOPE_PREFIX = 'enc:'
NONCE_BYTES = 12
KEY_BYTES = 32

REQUEST_TIMEOUT = 30  # seconds for API requests
PROXY_NAMESPACE = 'Utils'

# Console output flag
console_output = True

#==============================================================================
# OUTPUT AND LOGGING
#==============================================================================

def write_output(msg, **kwargs):
    """
    Write a timestamped message to the console and optionally a log file

    :param msg: Message to write
    :param kwargs:
        logfile - append the message to this file as well
        console - override console output setting (True/False)
    """
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    formatted_msg = f'[{timestamp}] {msg}'

    lfile = kwargs.get('logfile', None)
    print_to_console = kwargs.get('console', console_output)

    if lfile:
        try:
            with open(lfile, 'a') as f:
                f.write(formatted_msg + '\n')
        except OSError as e:
            logger.warning(f'Error writing to {lfile}: {e}')

    if print_to_console:
        print(formatted_msg)


def set_verbose(verbose: bool = True):
    """Raise the root logger to DEBUG"""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

#==============================================================================
# ERRORS
#==============================================================================

class ApiSessionError(Exception):
    """Base class for all credential and session errors"""


class MissingValueError(ApiSessionError):
    """A mandatory cached value has no explicit, cached or configured value"""


class MissingCredentialError(ApiSessionError):
    """No credential provider produced a credential"""


class EmptySecretError(ApiSessionError):
    """The operator entered an empty secret"""


class HttpError(ApiSessionError):
    """
    Non-2xx response from an API call.

    The message is the API-provided error body, or the status text when
    the body is empty.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class AuthenticationError(HttpError):
    """401/403 - the credential or session token was rejected"""


class NotFoundError(HttpError):
    """404, or a resource identifier that cannot be resolved"""


class CredentialFileError(OSError):
    """A credential file exists but is corrupt or cannot be decrypted"""


def get_innermost_message(exc: BaseException) -> str:
    """
    Unwrap chained exceptions and return the innermost message

    :param exc: The exception caught at the top level
    :return: Message of the deepest cause (or the exception type name if empty)
    """
    seen = set()
    inner = exc
    while id(inner) not in seen:
        seen.add(id(inner))
        nested = inner.__cause__ or inner.__context__
        if nested is None:
            break
        inner = nested
    message = str(inner).strip()
    return message if message else type(inner).__name__


def report_failure(exc: BaseException) -> str:
    """
    Log a warning with file/line context and return the flattened message.

    Stack traces and intermediate context are discarded; only the innermost
    message is surfaced to the caller.

    :param exc: The exception caught at the top level of a script
    :return: Flattened error message
    """
    message = get_innermost_message(exc)
    frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
    if frames:
        last = frames[-1]
        location = f'{os.path.basename(last.filename)}:{last.lineno}'
    else:
        location = 'unknown location'
    logger.warning(f'{location}: {message}')
    return message

#==============================================================================
# CONFIG HELPER FUNCTIONS
#==============================================================================

def load_module_config(module_dir: str, shared_dir: Optional[str] = shared_config_dir) -> ConfigParser:
    """
    Load the config.ini of a script family directory.

    The shared Utils config.ini (proxy settings) is read first so every
    family sees it; the family file wins on overlapping options.
    Missing files yield an empty parser.

    :param module_dir: Directory holding config.ini
    :param shared_dir: Directory of the shared config.ini, None to skip it
    :return: ConfigParser
    """
    config = ConfigParser()
    paths = []
    if shared_dir and os.path.abspath(shared_dir) != os.path.abspath(module_dir):
        paths.append(os.path.join(shared_dir, configname))
    paths.append(os.path.join(module_dir, configname))

    for config_path in paths:
        if os.path.isfile(config_path):
            config.read(config_path)
            logger.debug(f'Loaded module config {config_path}')
    return config


def get_config_value(config: Optional[ConfigParser], section: str, option: str, fallback=None):
    """
    Get a config option value, returning fallback if missing or commented out.

    If the value itself starts with '#' or ';', it's treated as if
    the option doesn't exist.

    :param config: ConfigParser (may be None)
    :param section: Config section name
    :param option: Config option name
    :param fallback: Default value if option doesn't exist or is commented
    :return: Config value or fallback
    """
    if config is None or not config.has_option(section, option):
        return fallback

    value = config.get(section, option).strip()

    if not value or value.startswith('#') or value.startswith(';'):
        return fallback

    return value


def parse_bool(value) -> bool:
    """Interpret config-style booleans ('true', 'yes', '1', 'on')"""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('true', 'yes', '1', 'on')

#==============================================================================
# VARIABLE CACHE
#==============================================================================

class VariableCache:
    """
    Namespaced key-value store living for one CLI invocation.

    Namespaces (e.g. 'CyberArk', 'vSphere', 'Utils') keep API families from
    colliding on common keys like 'Server'. A module config can be attached
    as the lowest-priority source for sync().
    """

    def __init__(self, config: Optional[ConfigParser] = None):
        self._store: Dict[str, Dict[str, Any]] = {}
        self.config = config

    def get(self, namespace: str, key: str, default=None):
        return self._store.get(namespace, {}).get(key, default)

    def set(self, namespace: str, key: str, value):
        self._store.setdefault(namespace, {})[key] = value

    def has(self, namespace: str, key: str) -> bool:
        return key in self._store.get(namespace, {})

    def sync(self, namespace: str, key: str, value=None, is_mandatory: bool = False, default=None):
        """
        Resolve a value and keep the cache in step.

        Precedence: explicit value (stored), cached value, module config
        ([namespace] key), default.

        :param namespace: Cache namespace
        :param key: Cache key
        :param value: Explicit value from the caller, stored when not None
        :param is_mandatory: Raise MissingValueError when nothing resolves
        :param default: Value used when nothing else resolves
        :return: The resolved value
        """
        if value is not None:
            self.set(namespace, key, value)
            return value

        cached = self.get(namespace, key)
        if cached is not None:
            return cached

        configured = get_config_value(self.config, namespace, key)
        if configured is not None:
            self.set(namespace, key, configured)
            return configured

        if default is not None:
            return default

        if is_mandatory:
            raise MissingValueError(f'{key} is required: pass it explicitly or set it once per session')
        return None

#==============================================================================
# SECRETS AND ENCRYPTION
#==============================================================================

class SecretProtector:
    """
    Per-user encryption for secrets persisted to disk or shown on a terminal.

    AES-256-GCM with a random 32-byte key stored at
    {directory}/.credential-key (chmod 600). Envelopes only decrypt on the
    machine and account holding the key.
    """

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or credential_dir
        self.key_path = os.path.join(self.directory, key_filename)
        self._key: Optional[bytes] = None

    def _load_key(self, create: bool) -> Optional[bytes]:
        if self._key is not None:
            return self._key

        if not os.path.isfile(self.key_path):
            if not create:
                return None
            os.makedirs(self.directory, exist_ok=True)
            with open(self.key_path, 'wb') as f:
                f.write(secrets.token_bytes(KEY_BYTES))
            os.chmod(self.key_path, stat.S_IRUSR | stat.S_IWUSR)  # 600
            logger.debug(f'Generated credential key {self.key_path}')

        with open(self.key_path, 'rb') as f:
            key = f.read()
        if len(key) != KEY_BYTES:
            raise CredentialFileError(f'Credential key {self.key_path} must be {KEY_BYTES} bytes, got {len(key)}')
        self._key = key
        return self._key

    def protect(self, plaintext: str) -> str:
        """Encrypt plaintext into an 'enc:' envelope"""
        key = self._load_key(create=True)
        nonce = secrets.token_bytes(NONCE_BYTES)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode('utf-8'), None)
        return ENVELOPE_PREFIX + base64.urlsafe_b64encode(nonce + ciphertext).decode('ascii')

    def unprotect(self, envelope: str) -> str:
        """
        Decrypt an 'enc:' envelope.

        :raises ValueError: value is not an envelope or does not decrypt with this key
        """
        if not isinstance(envelope, str) or not envelope.startswith(ENVELOPE_PREFIX):
            raise ValueError('Value is not an encrypted envelope')

        key = self._load_key(create=False)
        if key is None:
            raise ValueError(f'No credential key at {self.key_path}')

        try:
            data = base64.urlsafe_b64decode(envelope[len(ENVELOPE_PREFIX):].encode('ascii'))
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError(f'Malformed envelope: {e}') from e

        if len(data) < NONCE_BYTES + 16:
            raise ValueError('Encrypted data too short')

        try:
            plaintext = AESGCM(key).decrypt(data[:NONCE_BYTES], data[NONCE_BYTES:], None)
        except InvalidTag as e:
            raise ValueError('Envelope does not decrypt with this user key') from e
        return plaintext.decode('utf-8')


class SecretKind(Enum):
    ENCODED = "encoded"
    PLAINTEXT = "plaintext"


@dataclass(frozen=True)
class Secret:
    """
    A sensitive string, decoded once where it enters the program.

    kind records whether it arrived as an encrypted envelope or as plain
    text; value is always the decoded form.
    """
    value: str = field(repr=False)
    kind: SecretKind = SecretKind.PLAINTEXT

    @classmethod
    def from_input(cls, raw, protector: Optional[SecretProtector] = None) -> 'Secret':
        """
        Build a Secret from user or API input.

        The envelope decode is attempted first; anything that does not
        decrypt is taken as plain text.
        """
        if isinstance(raw, Secret):
            return raw
        raw = '' if raw is None else str(raw)
        if protector is not None and raw.startswith(ENVELOPE_PREFIX):
            try:
                return cls(protector.unprotect(raw), SecretKind.ENCODED)
            except (ValueError, OSError) as e:
                logger.debug(f'Secret did not decode as envelope, using plain text: {e}')
        return cls(raw, SecretKind.PLAINTEXT)

    def reveal(self) -> str:
        return self.value

    def encode(self, protector: SecretProtector) -> str:
        """Opaque envelope that is safe to print"""
        return protector.protect(self.value)

    def __bool__(self):
        return bool(self.value)

    def __str__(self):
        return '********'


class CredentialOrigin(Enum):
    EXPLICIT = "explicit"
    CACHE_HIT = "cache_hit"
    DISK_FILE = "disk_file"
    INTERACTIVE_PROMPT = "interactive_prompt"


@dataclass(frozen=True)
class Credential:
    identity: str
    secret: Secret
    origin: CredentialOrigin = CredentialOrigin.EXPLICIT


@dataclass(frozen=True)
class SessionToken:
    value: Secret
    server: str
    created_at: datetime.datetime = field(default_factory=datetime.datetime.now)

    def header_value(self) -> str:
        return self.value.reveal()

#==============================================================================
# CREDENTIAL FILES
#==============================================================================

def credential_file_path(directory: str, server: Optional[str], identity: str) -> str:
    """
    Path of a credential file.

    {directory}/{server}-{identity}.xml, or {directory}/{identity}.xml when
    no server is given.
    """
    safe_identity = identity.replace('\\', '_').replace('/', '_')
    if server:
        return os.path.join(directory, f'{server}-{safe_identity}.xml')
    return os.path.join(directory, f'{safe_identity}.xml')


def save_credential_file(credential: Credential, path: str, protector: SecretProtector) -> str:
    """
    Write a credential to disk with the secret encrypted for this user

    :param credential: Credential to persist
    :param path: Destination file
    :param protector: SecretProtector holding the user key
    :return: The path written
    """
    root = ET.Element('Credential')
    ET.SubElement(root, 'UserName').text = credential.identity
    ET.SubElement(root, 'Password').text = credential.secret.encode(protector)

    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    ET.ElementTree(root).write(path, encoding='utf-8', xml_declaration=True)
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    logger.info(f'Saved credential for {credential.identity} to {path}')
    return path


def load_credential_file(path: str, protector: SecretProtector) -> Credential:
    """
    Load a credential file written by save_credential_file

    :raises OSError: the file cannot be read
    :raises CredentialFileError: the file is corrupt or does not decrypt
    """
    with open(path, 'rb') as f:
        content = f.read()

    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise CredentialFileError(f'Corrupt credential file {path}: {e}') from e

    identity = root.findtext('UserName')
    envelope = root.findtext('Password')
    if not identity or not envelope:
        raise CredentialFileError(f'Corrupt credential file {path}: missing UserName or Password')

    try:
        secret = Secret(protector.unprotect(envelope), SecretKind.ENCODED)
    except ValueError as e:
        raise CredentialFileError(f'Cannot decrypt credential file {path}: {e}') from e

    return Credential(identity, secret, CredentialOrigin.DISK_FILE)

#==============================================================================
# INTERACTIVE PROMPTS
#==============================================================================

def prompt_for_credential(identity: Optional[str] = None, server: Optional[str] = None) -> Tuple[str, str]:
    """
    Ask the operator for a username and password

    :param identity: Suggested username, accepted with Enter
    :param server: Server name shown in the prompt
    :return: (identity, secret)
    """
    target = f' for {server}' if server else ''
    if identity:
        answer = input(f'Username{target} [{identity}]: ').strip()
        identity = answer or identity
    else:
        identity = input(f'Username{target}: ').strip()
    secret = getpass.getpass(f'Password for {identity}: ')
    return identity, secret


def ask_yes_no(question: str, default: bool = False) -> bool:
    """Ask a y/n question; Enter selects the default"""
    suffix = '[Y/n]' if default else '[y/N]'
    answer = input(f'{question} {suffix} ').strip().lower()
    if not answer:
        return default
    return answer in ('y', 'yes')

#==============================================================================
# CREDENTIAL PROVIDERS
#==============================================================================

@dataclass
class CredentialRequest:
    identity: Optional[str] = None
    secret: Optional[str] = None
    server: Optional[str] = None
    interactive: bool = False
    directory: Optional[str] = None
    mandatory: bool = False


class CredentialProvider:
    """One step of the resolution chain"""

    name = 'provider'

    def try_resolve(self, request: CredentialRequest) -> Optional[Credential]:
        raise NotImplementedError


class ExplicitProvider(CredentialProvider):
    """Identity and secret passed as parameters"""

    name = 'explicit'

    def __init__(self, protector: Optional[SecretProtector] = None):
        self.protector = protector

    def try_resolve(self, request):
        if not request.identity or not request.secret:
            return None
        secret = Secret.from_input(request.secret, self.protector)
        return Credential(request.identity, secret, CredentialOrigin.EXPLICIT)


class CacheProvider(CredentialProvider):
    """
    Credential stored in the VariableCache earlier in the same invocation.

    Entries are keyed by server, so a credential issued for one server is
    never offered to another.
    """

    name = 'cache'
    cache_key = 'Credential'

    def __init__(self, cache: VariableCache, namespace: str):
        self.cache = cache
        self.namespace = namespace

    @classmethod
    def key_for(cls, server: Optional[str]) -> str:
        return f'{cls.cache_key}:{server}' if server else cls.cache_key

    def try_resolve(self, request):
        cached = self.cache.get(self.namespace, self.key_for(request.server))
        if not isinstance(cached, Credential):
            return None
        if request.identity and cached.identity != request.identity:
            return None
        return Credential(cached.identity, cached.secret, CredentialOrigin.CACHE_HIT)


class DiskFileProvider(CredentialProvider):
    """{server}-{identity}.xml in the credential directory"""

    name = 'disk'

    def __init__(self, protector: SecretProtector, scoped_to_server: bool = True):
        self.protector = protector
        self.scoped_to_server = scoped_to_server

    def path_for(self, request: CredentialRequest) -> Optional[str]:
        if not request.identity:
            return None
        if self.scoped_to_server and not request.server:
            return None
        directory = request.directory or self.protector.directory
        server = request.server if self.scoped_to_server else None
        return credential_file_path(directory, server, request.identity)

    def try_resolve(self, request):
        if request.secret:
            return None
        path = self.path_for(request)
        if not path or not os.path.isfile(path):
            return None
        logger.debug(f'Loading credential file {path}')
        return load_credential_file(path, self.protector)


class FallbackFileProvider(DiskFileProvider):
    """{identity}.xml, not scoped by server; only tried in non-interactive mode"""

    name = 'fallback'

    def __init__(self, protector: SecretProtector):
        super().__init__(protector, scoped_to_server=False)

    def try_resolve(self, request):
        if request.interactive:
            return None
        return super().try_resolve(request)


class InteractivePromptProvider(CredentialProvider):
    """Prompt the operator and offer to save the result to disk"""

    name = 'interactive'

    def __init__(self, protector: SecretProtector,
                 prompt: Callable[..., Tuple[str, str]] = prompt_for_credential,
                 confirm: Callable[..., bool] = ask_yes_no,
                 save_default: bool = False):
        self.protector = protector
        self.prompt = prompt
        self.confirm = confirm
        self.save_default = save_default

    def try_resolve(self, request):
        if not request.interactive:
            return None

        identity, raw_secret = self.prompt(request.identity, request.server)
        if not raw_secret:
            raise EmptySecretError(f'Empty password entered for {identity}')

        credential = Credential(identity, Secret(raw_secret, SecretKind.PLAINTEXT),
                                CredentialOrigin.INTERACTIVE_PROMPT)

        target = f'{identity}@{request.server}' if request.server else identity
        if self.confirm(f'Save credentials for {target}?', default=self.save_default):
            directory = request.directory or self.protector.directory
            path = credential_file_path(directory, request.server, identity)
            save_credential_file(credential, path, self.protector)
            write_output(f'Credentials saved to {path}')

        return credential

#==============================================================================
# CREDENTIAL RESOLVER
#==============================================================================

class CredentialResolver:
    """
    Produce one Credential from an ordered list of providers.

    The default chain is explicit, cache, disk file, interactive prompt,
    then the server-less fallback file. The first provider returning a
    credential wins.
    """

    def __init__(self, providers: Optional[List[CredentialProvider]] = None,
                 protector: Optional[SecretProtector] = None,
                 cache: Optional[VariableCache] = None,
                 namespace: Optional[str] = None):
        self.protector = protector or SecretProtector()
        if providers is None:
            providers = self.default_providers(self.protector, cache, namespace)
        self.providers = providers

    @staticmethod
    def default_providers(protector: SecretProtector,
                          cache: Optional[VariableCache] = None,
                          namespace: Optional[str] = None) -> List[CredentialProvider]:
        providers: List[CredentialProvider] = [ExplicitProvider(protector)]
        if cache is not None and namespace:
            providers.append(CacheProvider(cache, namespace))
        providers.extend([
            DiskFileProvider(protector),
            InteractivePromptProvider(protector),
            FallbackFileProvider(protector),
        ])
        return providers

    def resolve(self, request: Optional[CredentialRequest] = None, **kwargs) -> Optional[Credential]:
        """
        Run the provider chain

        :param request: CredentialRequest, or build one from kwargs
        :return: Credential, or None when nothing resolves and it is not mandatory
        :raises MissingCredentialError: nothing resolves and mandatory is set
        """
        if request is None:
            request = CredentialRequest(**kwargs)

        for provider in self.providers:
            credential = provider.try_resolve(request)
            if credential is not None:
                logger.debug(f'Credential for {credential.identity} resolved by {provider.name}')
                return credential

        if request.mandatory:
            who = f' for {request.identity}' if request.identity else ''
            where = f' on {request.server}' if request.server else ''
            raise MissingCredentialError(
                f'No credential{who}{where}: pass username/password, save a credential file or use interactive mode')
        return None

#==============================================================================
# HTTP HELPERS
#==============================================================================

def build_http_session(approve_all_certificates: bool = False, proxy: Optional[str] = None) -> requests.Session:
    """
    Create a requests session for one connection.

    Certificate validation is disabled only on this session object.

    :param approve_all_certificates: Skip TLS certificate validation
    :param proxy: Optional proxy URL for http and https
    :return: requests.Session
    """
    session = requests.Session()
    session.verify = not approve_all_certificates
    if proxy:
        session.trust_env = False
        session.proxies = {'http': proxy, 'https': proxy}
    if approve_all_certificates:
        logger.debug('Certificate validation disabled for this session')
    return session


def set_proxy_settings(cache: VariableCache, proxy: Optional[str], bypass: Optional[str] = None) -> dict:
    """
    Remember a proxy for every connection made with this cache

    :param cache: VariableCache shared with the connectors
    :param proxy: Proxy URL, e.g. http://proxy.example.com:3128
    :param bypass: Comma-separated hosts that go direct ('.suffix' matches subdomains)
    """
    if proxy and not urlparse(proxy).scheme:
        raise ValueError(f'Proxy must be a URL (http://host:port): {proxy}')
    cache.set(PROXY_NAMESPACE, 'Proxy', proxy)
    if bypass is not None:
        cache.set(PROXY_NAMESPACE, 'ProxyBypass', bypass)
    return get_proxy_settings(cache)


def get_proxy_settings(cache: VariableCache) -> dict:
    proxy = cache.sync(PROXY_NAMESPACE, 'Proxy')
    bypass = cache.sync(PROXY_NAMESPACE, 'ProxyBypass', default='')
    return {
        'Proxy': proxy,
        'Bypass': [host.strip() for host in bypass.split(',') if host.strip()],
    }


def proxy_for_url(cache: VariableCache, url: str) -> Optional[str]:
    """Proxy to use for url, None when unset or the host is bypassed"""
    settings = get_proxy_settings(cache)
    if not settings['Proxy']:
        return None
    host = urlparse(url).hostname or ''
    for pattern in settings['Bypass']:
        if host == pattern or (pattern.startswith('.') and host.endswith(pattern)):
            logger.debug(f'{host} bypasses the proxy')
            return None
    return settings['Proxy']


def extract_error_message(response) -> str:
    """Pull the API-provided error text out of a failed response"""
    text = (response.text or '').strip()
    if text:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in ('ErrorMessage', 'message', 'Message', 'error', 'Details'):
                if body.get(key):
                    return str(body[key])
        if text.startswith('<'):
            try:
                root = ET.fromstring(text)
                if root.get('message'):
                    return root.get('message')
            except ET.ParseError:
                pass
        return text
    return f'{response.status_code} {response.reason or ""}'.strip()


def raise_for_response(response):
    """
    Raise a classified HttpError for non-2xx responses

    401/403 -> AuthenticationError, 404 -> NotFoundError, others -> HttpError
    """
    status = response.status_code
    if 200 <= status < 300:
        return response

    message = extract_error_message(response)
    url = getattr(response, 'url', None)
    logger.debug(f'HTTP {status} from {url}: {message}')

    if status in (401, 403):
        raise AuthenticationError(message, status, url)
    if status == 404:
        raise NotFoundError(message, status, url)
    raise HttpError(message, status, url)


def collect_pages(fetch_page: Callable[[int], Tuple[list, bool]], max_pages: Optional[int] = None) -> list:
    """
    Aggregate a paged API result.

    :param fetch_page: Called with page numbers 1, 2, ... and returns (records, has_next)
    :param max_pages: Stop with ApiSessionError after this many pages (None = unbounded)
    :return: Records from every page in page order
    """
    results = []
    page = 1
    while True:
        records, has_next = fetch_page(page)
        results.extend(records)
        logger.debug(f'Page {page}: {len(records)} records, has_next={has_next}')
        if not has_next:
            break
        if max_pages is not None and page >= max_pages:
            raise ApiSessionError(f'Paged result exceeded {max_pages} pages')
        page += 1
    return results

#==============================================================================
# SESSION CONNECTOR
#==============================================================================

class SessionConnector:
    """
    Exchange a Credential for a SessionToken, or reuse a cached one.

    Subclasses set namespace/token_key and implement _login() and
    _auth_headers().
    """

    namespace = 'Session'
    token_key = 'SessionToken'

    def __init__(self, cache: Optional[VariableCache] = None,
                 resolver: Optional[CredentialResolver] = None,
                 protector: Optional[SecretProtector] = None):
        self.cache = cache if cache is not None else VariableCache()
        self.protector = protector or (resolver.protector if resolver else SecretProtector())
        self.resolver = resolver or CredentialResolver(protector=self.protector, cache=self.cache,
                                                       namespace=self.namespace)
        self.session: Optional[requests.Session] = None
        self._session_settings: Optional[tuple] = None
        self.server: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f'https://{self.server}'

    def _ensure_http_session(self, approve_all_certificates: bool):
        """
        Build the scoped HTTP session, rebuilding it when the server, the
        certificate flag or the proxy in effect for the server changes
        """
        proxy = proxy_for_url(self.cache, self.base_url)
        settings = (self.server, approve_all_certificates, proxy)
        if self.session is None or settings != self._session_settings:
            if self.session is not None:
                self.session.close()
            self.session = build_http_session(approve_all_certificates, proxy=proxy)
            self._session_settings = settings
        return self.session

    def connect(self, server: Optional[str] = None, token=None,
                approve_all_certificates: Optional[bool] = None,
                identity: Optional[str] = None, secret=None,
                interactive: bool = False, directory: Optional[str] = None) -> SessionToken:
        """
        Return a SessionToken for server

        :param server: Target server, remembered for the rest of the session
        :param token: Pre-supplied token (plain text or envelope); skips login
        :param approve_all_certificates: Skip TLS validation for this connection
        :param identity: Username
        :param secret: Password (plain text or envelope)
        :param interactive: Prompt when no credential is found
        :param directory: Credential file directory
        :return: SessionToken
        """
        self.server = self.cache.sync(self.namespace, 'Server', server, is_mandatory=True)
        approve = parse_bool(self.cache.sync(self.namespace, 'ApproveAllCertificates',
                                             approve_all_certificates, default=False))
        self._ensure_http_session(approve)

        if token:
            if isinstance(token, SessionToken):
                token = token.value
            session_token = SessionToken(Secret.from_input(token, self.protector), self.server)
            self.cache.set(self.namespace, self.token_key, session_token)
            return session_token

        identity = self.cache.sync(self.namespace, 'Username', identity)
        credential = self.resolver.resolve(CredentialRequest(
            identity=identity,
            secret=secret,
            server=self.server,
            interactive=interactive,
            directory=directory,
            mandatory=True,
        ))

        logger.info(f'Authenticating to {self.server} as {credential.identity}')
        raw_token = self._login(credential)
        session_token = SessionToken(Secret(raw_token, SecretKind.PLAINTEXT), self.server)

        self.cache.set(self.namespace, self.token_key, session_token)
        self.cache.set(self.namespace, CacheProvider.key_for(self.server), credential)
        return session_token

    def get_token(self, **kwargs) -> SessionToken:
        """Cached token for this namespace, or connect()"""
        cached = self.cache.get(self.namespace, self.token_key)
        if isinstance(cached, SessionToken) and not kwargs.get('token'):
            if self.server is None:
                self.server = cached.server
            if self.session is None:
                approve = parse_bool(self.cache.get(self.namespace, 'ApproveAllCertificates', False))
                self._ensure_http_session(approve)
            return cached
        return self.connect(**kwargs)

    def request(self, method: str, path: str, token: Optional[SessionToken] = None, **kwargs):
        """
        Authenticated request against the connected server

        :param method: HTTP method
        :param path: Path appended to https://{server}
        :param token: Token to use (default: cached token)
        :param kwargs: Passed to requests.Session.request
        :return: requests.Response (2xx only)
        """
        if token is None:
            token = self.get_token()
        if self.server is None:
            self.server = token.server
        if self.session is None:
            self._ensure_http_session(parse_bool(self.cache.get(self.namespace, 'ApproveAllCertificates', False)))

        headers = dict(self._auth_headers(token))
        headers.update(kwargs.pop('headers', {}) or {})
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)

        url = path if path.startswith('http') else f'{self.base_url}{path}'
        logger.debug(f'{method.upper()} {url}')
        response = self.session.request(method.upper(), url, headers=headers, **kwargs)
        return raise_for_response(response)

    def disconnect(self):
        """Most APIs let the session expire server-side"""
        return None

    def _login(self, credential: Credential) -> str:
        raise NotImplementedError

    def _auth_headers(self, token: SessionToken) -> Dict[str, str]:
        raise NotImplementedError

#==============================================================================
# CLI HELPERS
#==============================================================================

def add_connection_arguments(parser):
    """Arguments shared by every family CLI"""
    parser.add_argument('--server', '-s', help='Server name (remembered in config.ini fallback)')
    parser.add_argument('--username', '-u', help='Username')
    parser.add_argument('--password', '-p', help='Password (plain text or enc: envelope)')
    parser.add_argument('--token', help='Pre-supplied session token (plain text or enc: envelope)')
    parser.add_argument('--interactive', '-i', action='store_true',
                        help='Prompt for credentials when none are found')
    parser.add_argument('--credential-dir', default=None,
                        help=f'Credential file directory (default: {credential_dir})')
    parser.add_argument('--approve-all-certificates', '--insecure', dest='approve_all_certificates',
                        action='store_true', default=None,
                        help='Skip TLS certificate validation for this connection')
    parser.add_argument('--proxy', help='Proxy URL for this connection (default: [Utils] Proxy in config.ini)')
    parser.add_argument('--as-json', action='store_true', help='Print the result as JSON')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    return parser


def connection_kwargs(args) -> dict:
    """Map parsed CLI arguments to SessionConnector.connect() kwargs"""
    return {
        'server': args.server,
        'token': args.token,
        'approve_all_certificates': args.approve_all_certificates,
        'identity': args.username,
        'secret': args.password,
        'interactive': args.interactive,
        'directory': args.credential_dir,
    }


def run_main(func, *args, **kwargs) -> int:
    """
    Run a CLI body with the shared top-level error policy

    :return: Process exit code (0 ok, 1 failure, 130 interrupted)
    """
    try:
        result = func(*args, **kwargs)
        if result is None or result is True:
            return 0
        if result is False:
            return 1
        return int(result)
    except KeyboardInterrupt:
        print('Interrupted', file=sys.stderr)
        return 130
    except Exception as e:
        message = report_failure(e)
        print(f'ERROR: {message}', file=sys.stderr)
        return 1
