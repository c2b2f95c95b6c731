"""
Access to a principal's attribute list on the API-management platform.

The attribute list is the only place certificate registrations are
persisted. It is an ordered list of name/value pairs that also contains
attributes certwarden knows nothing about; writes always replace the whole
list.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import quote

import requests
import yaml

from .errors import StoreError

__all__ = [
    'Attribute',
    'AttributeStore',
    'InMemoryAttributeStore',
    'FileAttributeStore',
    'ManagementApiAttributeStore',
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attribute:
    """A single name/value pair in a principal's attribute list."""

    name: str
    value: str

    @classmethod
    def from_json(cls, entry) -> 'Attribute':
        try:
            name = entry['name']
            value = entry.get('value', '')
        except (TypeError, KeyError, AttributeError) as e:
            raise StoreError(f"Malformed attribute entry: {entry!r}") from e
        if not isinstance(name, str):
            raise StoreError(f"Malformed attribute name: {name!r}")
        return cls(name=name, value='' if value is None else str(value))

    def to_json(self) -> Dict[str, str]:
        return {'name': self.name, 'value': self.value}


def attributes_from_json(payload) -> List[Attribute]:
    """
    Interpret a ``{"attribute": [...]}`` document. A missing or ``null``
    attribute member means the list is empty.
    """
    if not isinstance(payload, dict):
        raise StoreError("Attribute store returned a malformed document.")
    entries = payload.get('attribute')
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise StoreError("Attribute store returned a malformed list.")
    return [Attribute.from_json(entry) for entry in entries]


def attributes_to_json(attributes: List[Attribute]) -> dict:
    return {'attribute': [attr.to_json() for attr in attributes]}


class AttributeStore:
    """Abstract attribute store."""

    def get(self, email: str) -> List[Attribute]:
        """
        Fetch a principal's attribute list.

        :raises StoreError:
            if the store cannot be reached or returns malformed data.
        """
        raise NotImplementedError

    def put(self, email: str, attributes: List[Attribute]) \
            -> List[Attribute]:
        """
        Replace a principal's attribute list.

        :return:
            The attribute list as echoed back by the store.
        :raises StoreError:
            if the write fails. The stored state is then unknown.
        """
        raise NotImplementedError


class InMemoryAttributeStore(AttributeStore):
    """Attribute store that keeps everything in a dictionary."""

    def __init__(self, initial: Optional[Dict[str, List[Attribute]]] = None):
        self._lock = threading.Lock()
        self._data: Dict[str, List[Attribute]] = {
            email: list(attrs) for email, attrs in (initial or {}).items()
        }

    def get(self, email: str) -> List[Attribute]:
        with self._lock:
            return list(self._data.get(email, ()))

    def put(self, email: str, attributes: List[Attribute]) \
            -> List[Attribute]:
        with self._lock:
            self._data[email] = list(attributes)
            return list(attributes)


class FileAttributeStore(AttributeStore):
    """
    Attribute store backed by a YAML file mapping email addresses to
    attribute lists. Meant for local development and the command line.
    """

    def __init__(self, path: str):
        self.path = path

    def _read_all(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as inf:
                data = yaml.safe_load(inf)
        except (IOError, yaml.YAMLError) as e:
            raise StoreError(
                f"Failed to read attribute file {self.path}"
            ) from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StoreError(f"Attribute file {self.path} is malformed.")
        return data

    def get(self, email: str) -> List[Attribute]:
        entries = self._read_all().get(email)
        return attributes_from_json({'attribute': entries})

    def put(self, email: str, attributes: List[Attribute]) \
            -> List[Attribute]:
        data = self._read_all()
        data[email] = [attr.to_json() for attr in attributes]
        try:
            with open(self.path, 'w', encoding='utf-8') as outf:
                yaml.safe_dump(data, outf, sort_keys=True)
        except IOError as e:
            raise StoreError(
                f"Failed to write attribute file {self.path}"
            ) from e
        return list(attributes)


class ManagementApiAttributeStore(AttributeStore):
    """
    Attribute store talking to the management platform's REST API.

    :param base_url:
        Organization-level API URL, e.g.
        ``https://apigee.googleapis.com/v1/organizations/my-org``.
    :param token:
        Bearer token, if the API requires one.
    :param timeout:
        Request timeout in seconds.
    :param session:
        ``requests`` session to use. A new one is created by default.
    """

    def __init__(self, base_url: str, token: Optional[str] = None,
                 timeout: float = 30, session: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def attributes_url(self, email: str) -> str:
        email = quote(email, safe='@')
        return f"{self.base_url}/developers/{email}/attributes"

    def _headers(self):
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _request(self, method: str, email: str, payload=None):
        url = self.attributes_url(email)
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method, url, json=payload, headers=self._headers(),
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Attribute store request {method} {url} failed: {e}")
            raise StoreError(
                f"Attribute store request for {email} failed"
            ) from e
        try:
            document = response.json()
        except ValueError as e:
            raise StoreError(
                f"Attribute store returned invalid JSON for {email}"
            ) from e
        return attributes_from_json(document)

    def get(self, email: str) -> List[Attribute]:
        return self._request('GET', email)

    def put(self, email: str, attributes: List[Attribute]) \
            -> List[Attribute]:
        return self._request(
            'POST', email, payload=attributes_to_json(attributes)
        )
