"""Keyword-based configuration bundle resolution.

Given a session id, picks which configuration jobs, packages and variables
the Provisioner applies. Three lookups are tried in order:

  1. the session id itself
  2. the session's course (name + description)
  3. the session's scenario (name + description)

Platform records store names base64-encoded; text is decoded when the
decoded bytes are printable. The first rule whose keyword appears in the
lower-cased text wins. Any lookup failure falls back to the default bundle.

Rules are YAML::

    package_rules:
      - keywords: [python, django]
        packages: [python3, python3-pip]
        requirements: []
        variables: {python_version: "3"}
        playbooks: [base.yaml, dynamic.yaml]
    default_config:
      playbooks: [base.yaml, dynamic.yaml]
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Sequence

import yaml

from ..protocols import RecordStore
from ..store.errors import StoreError
from ..store.kinds import PLATFORM_COURSES, PLATFORM_SCENARIOS, PLATFORM_SESSIONS

logger = logging.getLogger(__name__)

DEFAULT_JOBS = ('base.yaml', 'dynamic.yaml')


@dataclass(frozen=True, slots=True)
class ConfigBundle:
    """Opaque configuration handed to the Provisioner."""

    jobs: tuple[str, ...] = DEFAULT_JOBS
    packages: tuple[str, ...] = ()
    requirements: tuple[str, ...] = ()
    variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


DEFAULT_CONFIG_BUNDLE = ConfigBundle()


@dataclass(frozen=True, slots=True)
class KeywordRule:
    keywords: tuple[str, ...]
    bundle: ConfigBundle

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)


BUILTIN_RULES_YAML = """
package_rules:
  - keywords: [devops, docker, kubernetes, container]
    packages: [docker.io, kubectl, helm]
    variables: {docker_install: "true", k8s_tools: "true"}
    playbooks: [base.yaml, dynamic.yaml]
  - keywords: [web, node, javascript, react]
    packages: [nodejs, npm, nginx]
    variables: {node_version: "18"}
    playbooks: [base.yaml, dynamic.yaml]
  - keywords: [python, django, flask, data]
    packages: [python3, python3-pip, python3-venv]
    variables: {python_version: "3"}
    playbooks: [base.yaml, dynamic.yaml]
default_config:
  playbooks: [base.yaml, dynamic.yaml]
"""


def _bundle_from_mapping(raw: Mapping[str, Any]) -> ConfigBundle:
    variables = raw.get('variables') or {}
    return ConfigBundle(
        jobs=tuple(raw.get('playbooks') or DEFAULT_JOBS),
        packages=tuple(raw.get('packages') or ()),
        requirements=tuple(raw.get('requirements') or ()),
        variables=MappingProxyType({str(k): str(v) for k, v in variables.items()}),
    )


def parse_rules(text: str) -> tuple[tuple[KeywordRule, ...], ConfigBundle]:
    """Parse a rules document into (rules, default bundle).

    Raises:
        ValueError: If the document is not a mapping or is not valid YAML.
    """
    try:
        doc = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ValueError(f'invalid rules YAML: {e}') from e
    if not isinstance(doc, dict):
        raise ValueError('rules document must be a mapping')

    rules = tuple(
        KeywordRule(
            keywords=tuple(str(k).lower() for k in entry.get('keywords') or ()),
            bundle=_bundle_from_mapping(entry),
        )
        for entry in doc.get('package_rules') or ()
    )
    default = _bundle_from_mapping(doc.get('default_config') or {})
    return rules, default


def load_rules(path: str | Path | None = None) -> tuple[tuple[KeywordRule, ...], ConfigBundle]:
    """Load rules from ``path`` or fall back to the built-in rule set."""
    if path:
        try:
            return parse_rules(Path(path).read_text(encoding='utf-8'))
        except (OSError, ValueError):
            logger.warning('Could not load config rules from %s, using built-in rules', path, exc_info=True)
    return parse_rules(BUILTIN_RULES_YAML)


def decode_if_base64(value: str) -> str:
    """Return the base64-decoded text if it decodes to printable UTF-8."""
    if not value:
        return value
    try:
        decoded = base64.b64decode(value, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value
    if decoded and decoded.isprintable():
        return decoded
    return value


class KeywordConfigResolver:
    """``ConfigResolver`` matching platform metadata against keyword rules."""

    def __init__(
        self,
        store: RecordStore,
        *,
        rules: Sequence[KeywordRule] | None = None,
        default: ConfigBundle = DEFAULT_CONFIG_BUNDLE,
    ) -> None:
        if rules is None:
            rules, default = load_rules()
        self._store = store
        self._rules = tuple(rules)
        self._default = default

    async def resolve(self, session_id: str) -> ConfigBundle:
        try:
            bundle = self._match(decode_if_base64(session_id))
            if bundle is not None:
                return bundle

            session = await self._store.get(PLATFORM_SESSIONS, session_id)
            if session is None:
                return self._default
            spec = session.get('spec') or {}

            for kind, ref in ((PLATFORM_COURSES, spec.get('course')), (PLATFORM_SCENARIOS, spec.get('scenario'))):
                if not ref:
                    continue
                record = await self._store.get(kind, ref)
                if record is None:
                    continue
                record_spec = record.get('spec') or {}
                text = ' '.join(
                    decode_if_base64(record_spec.get(key) or '')
                    for key in ('name', 'description')
                )
                bundle = self._match(text)
                if bundle is not None:
                    return bundle
        except StoreError:
            logger.warning(
                'Config resolution failed, using default bundle',
                extra={'session_id': session_id},
                exc_info=True,
            )
        return self._default

    def _match(self, text: str) -> ConfigBundle | None:
        normalized = text.lower()
        for rule in self._rules:
            if rule.matches(normalized):
                return rule.bundle
        return None
