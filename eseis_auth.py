"""
Eseis Authentication Module

Loads the Eseis configuration from the environment (and a local .env file),
builds the HTTP session used for API calls, and owns the bearer token used to
authenticate them.

Usage:
    from eseis_auth import TokenAuthority, create_session, load_config

    config = load_config()
    session = create_session()
    tokens = TokenAuthority(config, session)
    tokens.ensure_valid()
    # tokens.authorization_headers() is now ready for API calls
"""

from __future__ import annotations

import getpass
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

import requests
from dotenv import find_dotenv, load_dotenv
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from eseis_errors import AuthError, ConfigError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://sergic-api-prod.sergic.com'
DEFAULT_BASE_WEB_URL = 'https://client.eseis-syndic.com'

TOKEN_PATH = '/v1/oauth/token'
TOKEN_SCOPE = 'eseis'

# A token is only used while it has more than this left to live
TOKEN_SAFETY_MARGIN = timedelta(minutes=10)

REQUEST_TIMEOUT = 60


@dataclass(frozen=True)
class EseisConfig:
    client_id: str
    username: str
    password: str
    out_dir: str | None = None
    base_url: str = DEFAULT_BASE_URL
    base_web_url: str = DEFAULT_BASE_WEB_URL

    def build_url(self, path: str) -> str:
        return self.base_url.rstrip('/') + path

    def build_web_url(self, path: str) -> str:
        return self.base_web_url.rstrip('/') + path


def load_config(
    env: Mapping[str, str] | None = None,
    require_out_dir: bool = True,
    require_credentials: bool = True,
) -> EseisConfig:
    """
    Build the configuration from environment variables.

    A .env file in the working directory is loaded first, without overriding
    variables that are already set. Pass env to read from a mapping instead
    of os.environ.
    """
    if env is None:
        load_dotenv(find_dotenv(usecwd=True))
        env = os.environ

    required = ['ESEIS_CLIENT_ID']
    if require_credentials:
        required += ['ESEIS_USERNAME', 'ESEIS_PASSWORD']
    if require_out_dir:
        required.append('ESEIS_SCRAPPER_OUT_DIR')

    missing = [name for name in required if not env.get(name)]
    if missing:
        raise ConfigError(f'Missing required environment variables: {", ".join(missing)}')

    return EseisConfig(
        client_id=env['ESEIS_CLIENT_ID'],
        username=env.get('ESEIS_USERNAME', ''),
        password=env.get('ESEIS_PASSWORD', ''),
        out_dir=env.get('ESEIS_SCRAPPER_OUT_DIR') or None,
        base_url=env.get('ESEIS_BASE_URL') or DEFAULT_BASE_URL,
        base_web_url=env.get('ESEIS_BASE_WEB_URL') or DEFAULT_BASE_WEB_URL,
    )


def get_credentials_from_prompt(config: EseisConfig) -> EseisConfig:
    """
    Ask for whichever of username/password the environment did not provide.

    Returns a copy of config with both credentials filled in.
    """
    username = config.username
    password = config.password

    print()
    print('Please enter your Eseis credentials:')
    if not username:
        username = input('  Username (email): ').strip()
    if not password:
        password = getpass.getpass('  Password: ')

    if not username or not password:
        raise ConfigError('Username and password are required')

    return replace(config, username=username, password=password)


def create_session() -> requests.Session:
    """Create a requests session with retry logic and connection pooling."""
    session = requests.Session()

    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=['GET'],
    )
    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount('https://', adapter)

    session.headers.update({
        'Accept': 'application/json, text/plain, */*',
        'Accept-Language': 'fr-FR,fr;q=0.9,en;q=0.8',
        'Connection': 'keep-alive',
    })

    return session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionToken:
    """A bearer token and the absolute time it stops being accepted."""

    value: str
    issued_at: datetime
    expires_at: datetime
    refresh_value: str = ''

    def is_usable(self, now: datetime, margin: timedelta = TOKEN_SAFETY_MARGIN) -> bool:
        return now < self.expires_at - margin


class TokenAuthority:
    """
    Owns the API bearer token and re-authenticates before it runs out.

    ensure_valid() is the only entry point that replaces the token. It is
    called before every remote call, so a dependent request is never sent
    with a token known to be expired.
    """

    def __init__(
        self,
        config: EseisConfig,
        session: requests.Session,
        clock: Callable[[], datetime] = utcnow,
        safety_margin: timedelta = TOKEN_SAFETY_MARGIN,
    ) -> None:
        self.config = config
        self.session = session
        self.clock = clock
        self.safety_margin = safety_margin
        self._token: SessionToken | None = None

    @property
    def token(self) -> SessionToken | None:
        return self._token

    @property
    def access_token(self) -> str:
        if self._token is None:
            raise AuthError('Not authenticated yet')
        return self._token.value

    def needs_refresh(self) -> bool:
        if self._token is None:
            return True
        return not self._token.is_usable(self.clock(), self.safety_margin)

    def ensure_valid(self) -> SessionToken:
        """Return a usable token, authenticating first if needed."""
        if self.needs_refresh():
            if self._token is None:
                logger.info('Authenticating to Eseis API as %s', self.config.username)
            else:
                logger.info('Access token expires at %s, re-authenticating', self._token.expires_at)
            self._token = self.authenticate()
        return self._token

    def authorization_headers(self) -> dict[str, str]:
        """Bearer header for the current token, or nothing before the first login."""
        if self._token is None:
            return {}
        return {'Authorization': f'Bearer {self._token.value}'}

    def authenticate(self) -> SessionToken:
        """
        Exchange username/password for a fresh token (OAuth password grant).

        Raises AuthError on any failure; there is no retry.
        """
        payload = {
            'username': self.config.username,
            'password': self.config.password,
            'client_id': self.config.client_id,
            'grant_type': 'password',
            'scope': TOKEN_SCOPE,
        }

        try:
            response = self.session.post(
                self.config.build_url(TOKEN_PATH),
                json=payload,
                headers={'Content-Type': 'application/json;charset=UTF-8'},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise AuthError(f'Failed to send authentication request: {e}') from e

        if response.status_code != 200:
            raise AuthError(
                f'Authentication failed: HTTP {response.status_code}\n'
                f'Response: {response.text[:500]}'
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError(f'Invalid JSON response from authentication: {e}') from e

        try:
            created_at = datetime.fromtimestamp(int(data['created_at']), tz=timezone.utc)
            expires_at = created_at + timedelta(seconds=int(data['expires_in']))
            token = SessionToken(
                value=str(data['access_token']),
                issued_at=created_at,
                expires_at=expires_at,
                refresh_value=str(data.get('refresh_token') or ''),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(f'Malformed authentication response: {e}') from e

        if not token.value:
            raise AuthError('Authentication response has an empty access token')

        logger.debug('Access token valid until %s', token.expires_at)
        return token
