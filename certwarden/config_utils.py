"""
Utilities to populate dataclasses from user-provided configuration
(e.g. a YAML file).

.. note::
    On naming conventions: configuration keys use hyphens, which this module
    converts to underscores as a matter of course.
"""

import dataclasses
import fnmatch
import os
import os.path
from typing import List


__all__ = [
    'ConfigurationError', 'ConfigurableMixin', 'check_config_keys',
    'key_dashes_to_underscores', 'LabelString', 'SearchDir',
]


class LabelString:
    """
    Class that can be subclassed to get (somewhat) type-safe label strings.

    Equality and hashing delegate to the underlying string, so a label
    compares equal to a plain ``str`` with the same content.
    """

    __slots__ = ['value']

    def __init__(self, value: str):
        if not isinstance(value, str):
            raise TypeError
        self.value = value

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"{self.__class__.__name__}('{self.value}')"

    def __hash__(self):
        return hash(self.value)

    def __eq__(self, other):
        return str(self) == str(other)


class ConfigurationError(ValueError):
    """Signal configuration errors."""
    pass


def key_dashes_to_underscores(config_dict):
    return {
        key.replace('-', '_'): v for key, v in config_dict.items()
    }


@dataclasses.dataclass(frozen=True)
class ConfigurableMixin:
    """General configuration mixin for dataclasses"""

    @classmethod
    def process_entries(cls, config_dict):
        """
        Hook method to convert or validate raw configuration values before
        they are passed to the initialiser.

        Subclasses that override this method should call
        ``super().process_entries()``, and leave keys that they do not
        recognise untouched.

        :param config_dict:
            A dictionary containing configuration values (with underscores).
        :raises ConfigurationError:
            when there is a problem processing a relevant entry.
        """
        pass

    @classmethod
    def from_config(cls, config_dict):
        """
        Instantiate the class on which it is called from a configuration
        dictionary.

        :param config_dict:
            A dictionary containing configuration values.
        :return:
            An instance of the class on which it is called.
        :raises ConfigurationError:
            when an unexpected configuration key is encountered or a required
            one is missing, or when a value cannot be processed.
        """
        if config_dict is None:
            config_dict = {}
        check_config_keys(
            cls.__name__, {f.name for f in dataclasses.fields(cls)},
            config_dict
        )
        config_dict = key_dashes_to_underscores(config_dict)
        cls.process_entries(config_dict)
        try:
            # noinspection PyArgumentList
            return cls(**config_dict)
        except TypeError as e:  # pragma: nocover
            raise ConfigurationError(e)


def check_config_keys(config_name, expected_keys, config_dict):
    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"{config_name} requires a dictionary to initialise."
        )
    # standardise on dashes for the yaml interface
    provided_keys = {key.replace('_', '-') for key in config_dict.keys()}
    expected_keys = {key.replace('_', '-') for key in expected_keys}
    if not (provided_keys <= expected_keys):
        unexpected_keys = provided_keys - expected_keys
        raise ConfigurationError(
            f"Unexpected {'key' if len(unexpected_keys) == 1 else 'keys'} "
            f"in configuration for {config_name}: "
            f"{','.join(sorted(unexpected_keys))}."
        )


class SearchDir:
    """
    Directory that resolves relative paths, refusing anything that would
    escape from it.
    """

    root_path: str

    def __init__(self, root_path: str):
        self.root_path = os.path.abspath(root_path)

    def resolve(self, path):
        joined = os.path.join(self.root_path, path)
        abs_path = os.path.abspath(joined)
        if os.path.commonpath([self.root_path, abs_path]) != self.root_path:
            raise ConfigurationError(
                f"Path '{joined}' does not resolve to a directory "
                f"under '{self.root_path}'."
            )
        return abs_path

    def glob(self, pattern: str) -> List[str]:
        """
        List the files directly under this directory whose names match
        a shell-style pattern, in sorted order.
        """
        try:
            names = sorted(os.listdir(self.root_path))
        except OSError as e:
            raise ConfigurationError(
                f"Cannot list directory '{self.root_path}'."
            ) from e
        return [
            self.resolve(name) for name in names
            if fnmatch.fnmatchcase(name, pattern)
            and os.path.isfile(os.path.join(self.root_path, name))
        ]

    def __repr__(self):
        return f"SearchDir('{self.root_path}')"

    def __str__(self):
        return self.root_path
