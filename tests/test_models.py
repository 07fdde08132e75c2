from datetime import timedelta

import pytest
from pydantic import ValidationError

from src.models import (
    KeepPolicy,
    Limit,
    Operator,
    ReferenceKind,
    ReferencesSelector,
    compile_pattern,
    parse_duration,
)


def test_literal_pattern_is_anchored():
    pattern = compile_pattern("release")
    assert pattern.search("release")
    assert not pattern.search("release-2")
    assert not pattern.search("my-release")


def test_literal_pattern_is_escaped():
    pattern = compile_pattern("v1.0")
    assert pattern.search("v1.0")
    assert not pattern.search("v1x0")


def test_slash_delimited_pattern_is_regexp():
    pattern = compile_pattern(r"/^feature-\d+/")
    assert pattern.search("feature-12")
    assert pattern.search("feature-12-fix")
    assert not pattern.search("hotfix")


def test_invalid_regexp():
    with pytest.raises(ValueError):
        compile_pattern("/feature-(/")


def test_selector_requires_branch_or_tag():
    with pytest.raises(ValidationError):
        ReferencesSelector.model_validate({"limit": {"last": 1}})


def test_selector_rejects_both_branch_and_tag():
    with pytest.raises(ValidationError):
        ReferencesSelector.model_validate({"branch": "master", "tag": "v1"})


def test_selector_rejects_invalid_regexp():
    with pytest.raises(ValidationError):
        ReferencesSelector.model_validate({"branch": "/[/"})


def test_selector_kind_and_pattern():
    selector = ReferencesSelector.model_validate({"tag": "/^v/"})
    assert selector.kind == ReferenceKind.TAG
    assert selector.pattern.pattern == "^v"

    selector = ReferencesSelector.model_validate({"branch": "master"})
    assert selector.kind == ReferenceKind.BRANCH
    assert selector.pattern.search("master")


def test_limit_default_operator_with_both_bounds():
    limit = Limit.model_validate({"last": 5, "in": "7d"})
    assert limit.operator == Operator.AND
    assert limit.in_ == timedelta(days=7)


def test_limit_keeps_explicit_operator():
    limit = Limit.model_validate({"last": 5, "in": "12h", "operator": "Or"})
    assert limit.operator == Operator.OR


def test_limit_without_both_bounds_has_no_operator():
    assert Limit.model_validate({"last": 5}).operator is None
    assert Limit.model_validate({"in": "1h"}).operator is None
    assert Limit().is_empty()


def test_limit_rejects_unknown_operator():
    with pytest.raises(ValidationError):
        Limit.model_validate({"last": 1, "in": "1h", "operator": "Xor"})


def test_limit_rejects_negative_last():
    with pytest.raises(ValidationError):
        Limit.model_validate({"last": -2})
    assert Limit.model_validate({"last": -1}).last == -1


def test_parse_duration():
    assert parse_duration("168h") == timedelta(days=7)
    assert parse_duration("1h30m") == timedelta(minutes=90)
    assert parse_duration("2w") == timedelta(days=14)
    assert parse_duration("1.5d") == timedelta(hours=36)
    with pytest.raises(ValueError):
        parse_duration("7 days")


def test_limit_accepts_seconds():
    assert Limit.model_validate({"in": 3600}).in_ == timedelta(hours=1)


def test_keep_policy_description():
    policy = KeepPolicy.model_validate(
        {
            "references": {"branch": "/.*/", "limit": {"last": 10, "in": "7d"}},
            "images_per_reference": {"last": 2},
        }
    )
    assert str(policy) == (
        "references.branch: .* (last 10 And in 7d), images per reference: last 2"
    )


def test_single_slash_is_empty_regexp():
    pattern = compile_pattern("/")
    assert pattern.pattern == ""
    assert pattern.search("feature/anything")


def test_limit_rejects_unknown_keys():
    with pytest.raises(ValidationError):
        Limit.model_validate({"createdIn": "7d"})
    assert Limit(in_=timedelta(days=1)).in_ == timedelta(days=1)


def test_selector_rejects_unknown_keys():
    with pytest.raises(ValidationError):
        ReferencesSelector.model_validate({"branch": "/.*/", "limit": {"createdIn": "7d"}})
    with pytest.raises(ValidationError):
        ReferencesSelector.model_validate({"branch": "/.*/", "lmit": {"last": 1}})


def test_keep_policy_rejects_unknown_keys():
    with pytest.raises(ValidationError):
        KeepPolicy.model_validate(
            {"references": {"branch": "/.*/"}, "imagesPerReference": {"last": 1}}
        )
