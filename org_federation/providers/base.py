"""
Directory provider interface and common functionality.

This module defines the contract every directory integration must satisfy, the
normalized records they hand back, and the shared HTTP client used by the
REST-based providers (SSL, OAuth2 client credentials, JSON requests).
"""

import json
import ssl
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from org_federation.retry import RetryableError, RetryPolicy

logger = logging.getLogger(__name__)


class DirectoryAPIError(Exception):
    """Base exception for directory provider errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when authentication to the directory fails."""
    pass


class DirectoryNotFoundError(DirectoryAPIError):
    """Raised when the requested object does not exist."""
    pass


class DirectoryTransientError(DirectoryAPIError, RetryableError):
    """Raised for failures worth retrying (throttling, 5xx, dropped connections)."""
    pass


class MemberKind(Enum):
    """Normalized type of a group member."""
    GROUP = 'group'
    USER = 'user'
    OTHER = 'other'


@dataclass
class GroupRecord:
    id: Optional[str]
    display_name: str = ''
    description: Optional[str] = None
    mail_enabled: bool = False
    mail_nickname: Optional[str] = None
    security_enabled: bool = True


@dataclass
class UserRecord:
    id: str
    display_name: str = ''
    mail: Optional[str] = None
    other_emails: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class MemberRecord:
    """Partial record returned by a membership listing."""
    id: str
    kind: MemberKind


class DirectoryProvider(ABC):
    """
    Abstract base class for directory integrations.

    Providers translate their native objects into GroupRecord/UserRecord and
    their native member type tags into MemberKind, so nothing above this layer
    inspects provider-specific discriminators.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.name = config.get('name', self.__class__.__name__)

    def authenticate(self) -> None:
        """Establish a session; raise DirectoryAuthenticationError on failure."""
        pass

    def close(self) -> None:
        """Release the underlying connection."""
        pass

    @abstractmethod
    def get_group(self, group_id: str) -> GroupRecord:
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> UserRecord:
        pass

    @abstractmethod
    def list_group_members(self, group_id: str) -> List[MemberRecord]:
        pass

    @abstractmethod
    def create_group(self, group: GroupRecord) -> GroupRecord:
        """
        Create a group.

        Args:
            group: Desired group; id is ignored

        Returns:
            The created group with its provider-assigned id
        """
        pass

    @abstractmethod
    def link_member(self, parent_group_id: str, child_id: str) -> None:
        """Add the directory object child_id as a member of parent_group_id."""
        pass

    @abstractmethod
    def patch_group(self, group_id: str, fields: Dict[str, Any]) -> None:
        """Update GroupRecord fields (by attribute name) on a group."""
        pass

    @abstractmethod
    def patch_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        """Update UserRecord fields (by attribute name) on a user."""
        pass

    @abstractmethod
    def find_users_with_other_email(self, value: str) -> List[UserRecord]:
        """Return users whose other-emails list contains value exactly."""
        pass

    @abstractmethod
    def find_groups_with_description(self, value: str) -> List[GroupRecord]:
        """Return groups whose description contains value (may over-match)."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class HTTPDirectoryBase(DirectoryProvider):
    """
    Shared HTTP client for REST directory APIs.

    Handles the SSL context, OAuth2 client-credentials tokens and JSON
    request/response plumbing. Transient failures are retried according to the
    target's error_handling settings.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_url = config['base_url'].rstrip('/')
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.retry_policy = RetryPolicy.from_config(config.get('error_handling'))

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}
        self._token_expires_at = 0.0

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates (PEM or PKCS12)."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise DirectoryAPIError(f"Unsupported truststore type: {truststore_type}")

        except DirectoryAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise DirectoryAPIError(f"Truststore loading failed: {e}")

    # OAuth2 client credentials

    @property
    def token_url(self) -> str:
        return self.config['token_url']

    @property
    def token_scope(self) -> str:
        return self.config.get('scope', '')

    def _oauth2_get_token(self) -> None:
        """
        Retrieve an access token using the client credentials flow.

        Raises:
            DirectoryAuthenticationError: If the token endpoint refuses the credentials
        """
        client_id = self.config.get('client_id')
        client_secret = self.config.get('client_secret')

        if not client_id or not client_secret:
            raise DirectoryAuthenticationError(f"OAuth2 configuration incomplete for {self.name}")

        parsed_token_url = urlparse(self.token_url)
        if parsed_token_url.scheme == 'https':
            token_conn = HTTPSConnection(parsed_token_url.netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            token_conn = HTTPConnection(parsed_token_url.netloc, timeout=self.timeout)

        token_data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret
        }
        if self.token_scope:
            token_data['scope'] = self.token_scope

        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), token_headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError, HTTPException) as e:
            raise DirectoryAuthenticationError(f"OAuth2 token request error for {self.name}: {e}")
        finally:
            token_conn.close()

        if response.status != 200:
            code, message = self._parse_error_body(response_data)
            raise DirectoryAuthenticationError(
                f"OAuth2 token request failed for {self.name}: {response.status} {message or response.reason}",
                status_code=response.status, code=code
            )

        try:
            token_response = json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DirectoryAuthenticationError(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")

        access_token = token_response.get('access_token')
        if not access_token:
            raise DirectoryAuthenticationError(f"OAuth2 response missing access_token for {self.name}")

        self.auth_headers['Authorization'] = f"Bearer {access_token}"
        expires_in = int(token_response.get('expires_in', 3600))
        self._token_expires_at = time.time() + expires_in - 60
        logger.info(f"Obtained OAuth2 token for {self.name}")

    def _is_token_valid(self) -> bool:
        return 'Authorization' in self.auth_headers and time.time() < self._token_expires_at

    def authenticate(self) -> None:
        if not self._is_token_valid():
            self._oauth2_get_token()
        else:
            logger.debug(f"OAuth2 token still valid for {self.name}")

    # Requests

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def _full_path(self, path: str) -> str:
        """Turn an API-relative path or an absolute link into a request path."""
        if path.startswith(self.base_url):
            path = path[len(self.base_url):]
        return self.base_path + '/' + path.lstrip('/')

    @staticmethod
    def _parse_error_body(response_data: str):
        """Extract (code, message) from a JSON error body, if there is one."""
        try:
            body = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError:
            return None, None
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get('code'), error.get('message')
        if isinstance(error, str):
            return error, body.get('error_description')
        return None, None

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make a JSON request to the directory API.

        Transient failures of idempotent methods are retried; a POST is sent
        exactly once, since the server may have acted on it before failing.

        Args:
            method: HTTP method
            path: API path relative to base_url, or an absolute link under base_url
            body: JSON body
            headers: Additional headers

        Returns:
            Parsed response body ({} for empty responses)

        Raises:
            DirectoryAPIError: If the request fails
        """
        return self.retry_policy.run(
            self._send, method, path, body, headers,
            operation=f"{method} {path} on {self.name}",
            method=method,
            exceptions=(DirectoryTransientError,)
        )

    def _send(self, method: str, path: str, body: Optional[Dict] = None,
              headers: Optional[Dict] = None) -> Dict[str, Any]:
        full_path = self._full_path(path)
        request_body = json.dumps(body) if body is not None else None

        max_auth_retries = 1
        for auth_attempt in range(max_auth_retries + 1):
            if not self._is_token_valid():
                self._oauth2_get_token()

            request_headers = dict(self.auth_headers)
            request_headers['Accept'] = 'application/json'
            if request_body is not None:
                request_headers['Content-Type'] = 'application/json'
            if headers:
                request_headers.update(headers)

            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (ConnectionError, OSError, HTTPException) as e:
                self.close()
                raise DirectoryTransientError(f"Connection error to {self.name}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt < max_auth_retries:
                logger.info(f"401 received, refreshing OAuth2 token for {self.name}")
                self.auth_headers.pop('Authorization', None)
                continue

            if response.status >= 400:
                raise self._error_for_status(response.status, response.reason, response_data)

            try:
                return json.loads(response_data) if response_data else {}
            except json.JSONDecodeError as e:
                raise DirectoryAPIError(f"Invalid JSON response from {self.name}: {e}",
                                        status_code=response.status)

        raise DirectoryAuthenticationError(f"Authentication failed for {self.name}", status_code=401)

    def _error_for_status(self, status: int, reason: str, response_data: str) -> DirectoryAPIError:
        code, message = self._parse_error_body(response_data)
        text = f"HTTP {status}: {message or reason}"
        if status == 401:
            return DirectoryAuthenticationError(text, status_code=status, code=code)
        if status == 404:
            return DirectoryNotFoundError(text, status_code=status, code=code)
        if status == 429 or status >= 500:
            return DirectoryTransientError(text, status_code=status, code=code)
        return DirectoryAPIError(text, status_code=status, code=code)

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
