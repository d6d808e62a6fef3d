"""Keyword config resolution tests.

Validates:
  - rules YAML parsing into keyword rules and a default bundle
  - load_rules falls back to the built-in rules on a missing or bad file
  - base64 names are decoded only when they decode to printable text
  - resolution order: session id, then course, then scenario
  - store failures fall back to the default bundle
"""

from __future__ import annotations

import base64

import pytest

from training_provisioner.app.provisioning.config_resolver import (
    BUILTIN_RULES_YAML,
    DEFAULT_CONFIG_BUNDLE,
    ConfigBundle,
    KeywordConfigResolver,
    decode_if_base64,
    load_rules,
    parse_rules,
)
from training_provisioner.app.store.kinds import (
    PLATFORM_COURSES,
    PLATFORM_SCENARIOS,
    PLATFORM_SESSIONS,
)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode('utf-8')).decode('ascii')


RULES_YAML = """
package_rules:
  - keywords: [Python]
    packages: [python3]
    variables: {python_version: 3}
    playbooks: [base.yaml, python.yaml]
  - keywords: [docker]
    packages: [docker.io]
default_config:
  playbooks: [base.yaml]
"""


# =====================================================================
# 1. Rule parsing
# =====================================================================


class TestParseRules:
    def test_parses_rules_and_default(self):
        rules, default = parse_rules(RULES_YAML)

        assert len(rules) == 2
        assert rules[0].keywords == ('python',)
        assert rules[0].bundle.jobs == ('base.yaml', 'python.yaml')
        assert rules[0].bundle.variables == {'python_version': '3'}
        assert rules[1].bundle.jobs == ('base.yaml', 'dynamic.yaml')
        assert default.jobs == ('base.yaml',)

    def test_empty_document_gives_default_bundle(self):
        rules, default = parse_rules('')
        assert rules == ()
        assert default == ConfigBundle()

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError, match='mapping'):
            parse_rules('- just\n- a list\n')

    def test_invalid_yaml_rejected(self):
        with pytest.raises(ValueError, match='invalid rules YAML'):
            parse_rules('package_rules: [unclosed')

    def test_builtin_rules_parse(self):
        rules, _ = parse_rules(BUILTIN_RULES_YAML)
        assert [r.keywords[0] for r in rules] == ['devops', 'web', 'python']


class TestLoadRules:
    def test_reads_file(self, tmp_path):
        path = tmp_path / 'rules.yaml'
        path.write_text(RULES_YAML, encoding='utf-8')

        rules, default = load_rules(path)

        assert rules[0].keywords == ('python',)
        assert default.jobs == ('base.yaml',)

    def test_missing_file_falls_back(self, tmp_path):
        rules, _ = load_rules(tmp_path / 'missing.yaml')
        assert len(rules) == 3

    def test_bad_file_falls_back(self, tmp_path):
        path = tmp_path / 'rules.yaml'
        path.write_text('[1, 2', encoding='utf-8')
        rules, _ = load_rules(path)
        assert len(rules) == 3

    def test_no_path_uses_builtin(self):
        rules, _ = load_rules(None)
        assert len(rules) == 3


class TestDecodeIfBase64:
    def test_decodes_printable(self):
        assert decode_if_base64(_b64('Intro to Python')) == 'Intro to Python'

    def test_leaves_plain_text(self):
        assert decode_if_base64('python-lab') == 'python-lab'

    def test_leaves_binary_payload(self):
        encoded = base64.b64encode(b'\x00\x01\x02').decode('ascii')
        assert decode_if_base64(encoded) == encoded

    def test_empty(self):
        assert decode_if_base64('') == ''


# =====================================================================
# 2. Resolution
# =====================================================================


class TestKeywordConfigResolver:
    def _resolver(self, store) -> KeywordConfigResolver:
        rules, default = parse_rules(RULES_YAML)
        return KeywordConfigResolver(store, rules=rules, default=default)

    def _session(self, store, name: str, *, course: str = '', scenario: str = '') -> None:
        store.put(PLATFORM_SESSIONS, {
            'metadata': {'name': name},
            'spec': {'course': course, 'scenario': scenario},
        })

    @pytest.mark.asyncio
    async def test_session_id_match_wins(self, store):
        bundle = await self._resolver(store).resolve('python-lab-1')
        assert bundle.packages == ('python3',)

    @pytest.mark.asyncio
    async def test_course_match(self, store):
        self._session(store, 's-1', course='c-1', scenario='sc-1')
        store.put(PLATFORM_COURSES, {
            'metadata': {'name': 'c-1'},
            'spec': {'name': _b64('Docker Fundamentals'), 'description': ''},
        })
        store.put(PLATFORM_SCENARIOS, {
            'metadata': {'name': 'sc-1'},
            'spec': {'name': _b64('Python basics')},
        })

        bundle = await self._resolver(store).resolve('s-1')

        assert bundle.packages == ('docker.io',)

    @pytest.mark.asyncio
    async def test_scenario_match_when_course_has_none(self, store):
        self._session(store, 's-1', course='c-1', scenario='sc-1')
        store.put(PLATFORM_COURSES, {
            'metadata': {'name': 'c-1'},
            'spec': {'name': _b64('General onboarding')},
        })
        store.put(PLATFORM_SCENARIOS, {
            'metadata': {'name': 'sc-1'},
            'spec': {'name': 'scenario', 'description': _b64('Write some python')},
        })

        bundle = await self._resolver(store).resolve('s-1')

        assert bundle.packages == ('python3',)

    @pytest.mark.asyncio
    async def test_no_match_gives_default(self, store):
        self._session(store, 's-1', course='missing')

        bundle = await self._resolver(store).resolve('s-1')

        assert bundle.jobs == ('base.yaml',)
        assert bundle.packages == ()

    @pytest.mark.asyncio
    async def test_unknown_session_gives_default(self, store):
        bundle = await self._resolver(store).resolve('s-unknown')
        assert bundle.jobs == ('base.yaml',)

    @pytest.mark.asyncio
    async def test_store_failure_gives_default(self, store):
        store.failing.add('get')
        bundle = await self._resolver(store).resolve('s-1')
        assert bundle.jobs == ('base.yaml',)

    @pytest.mark.asyncio
    async def test_builtin_rules_by_default(self, store):
        bundle = await KeywordConfigResolver(store).resolve('kubernetes-workshop')
        assert 'kubectl' in bundle.packages
        assert bundle is not DEFAULT_CONFIG_BUNDLE
