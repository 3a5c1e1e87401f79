"""Tests for the content policy filter."""

import tempfile
from pathlib import Path

import yaml

from classchat.moderation.content_filter import ContentFilter, load_term_lists, normalize


def test_normalize_strips_punctuation_and_case():
    assert normalize("  Hello,   WORLD!! ") == "hello world"
    assert normalize("self-harm") == "self harm"
    assert normalize("...") == ""


def test_clean_text():
    verdict = ContentFilter().classify("What is the derivative of x squared?")
    assert verdict.clean
    assert not verdict.prohibited
    assert not verdict.warning


def test_prohibited_whole_word_any_case_or_punctuation():
    f = ContentFilter(prohibited_terms=["bomb"], warning_terms=[])
    for text in ["bomb", "BOMB!", "a (bomb) here", "...Bomb...", "the bomb."]:
        assert f.classify(text).prohibited, text


def test_substring_does_not_match():
    f = ContentFilter(prohibited_terms=["ass"], warning_terms=[])
    assert not f.classify("classic assignment pass").prohibited
    assert f.classify("you ass").prohibited


def test_default_lists_respect_word_boundaries():
    f = ContentFilter()
    # "cp" is prohibited, "cpu" is not
    assert not f.classify("my cpu is slow").prohibited
    assert f.classify("CP").prohibited
    # "die" is a warning term, "diet" is not
    assert f.classify("my diet plan").clean


def test_multi_word_terms_span_punctuation():
    f = ContentFilter()
    assert f.classify("I want to... KILL   myself").prohibited
    assert f.classify("shut-up please").warning


def test_prohibited_takes_precedence():
    verdict = ContentFilter().classify("shit, there's a bomb")
    assert verdict.prohibited
    assert not verdict.warning


def test_warning_only():
    verdict = ContentFilter().classify("fuck this class")
    assert verdict.warning
    assert not verdict.prohibited


def test_classify_does_not_mutate_input():
    text = "Shut UP!"
    ContentFilter().classify(text)
    assert text == "Shut UP!"


def test_load_term_lists_from_yaml():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "terms.yaml"
        path.write_text(yaml.dump({"prohibited": ["zorp"], "warning": ["blip"]}))

        f = load_term_lists(path)
        assert f.classify("ZORP!").prohibited
        assert f.classify("blip").warning
        assert f.classify("bomb").clean


def test_load_term_lists_falls_back_to_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "terms.yaml"
        path.write_text(yaml.dump({"warning": ["blip"]}))

        f = load_term_lists(path)
        assert f.classify("bomb").prohibited
        assert f.classify("blip").warning
