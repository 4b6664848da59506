"""
Tests for campaign hashtag gating.
"""

from pipeline.hashtags import HashtagPredicate, extract_hashtags, has_required_hashtag


def test_extract_hashtags_lowercases():
    assert extract_hashtags('New drop #Brand #summer26 and more') == ['#brand', '#summer26']
    assert extract_hashtags(None) == []


def test_no_required_tags_accepts_everything():
    assert has_required_hashtag('anything', [])
    assert has_required_hashtag(None, None)


def test_required_tag_matches_hash_or_bare_word():
    assert has_required_hashtag('Loving this #BRAND moment', ['brand'])
    assert has_required_hashtag('brand partner', ['#Brand'])
    assert not has_required_hashtag('brandnew stuff', ['brand'])
    assert not has_required_hashtag('', ['brand'])


def test_any_of_several_tags_is_enough():
    assert has_required_hashtag('#summer vibes', ['brand', 'summer'])


def test_predicate_reads_title_or_caption():
    predicate = HashtagPredicate(['#Brand', ' '])
    assert predicate.active
    assert predicate.required == ['brand']
    assert predicate({'title': 'hi #brand'})
    assert predicate({'caption': 'reel #brand'})
    assert not predicate({'title': 'nothing'})
    assert not HashtagPredicate([]).active
