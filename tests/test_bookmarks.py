import pytest  # noqa
import patchhub
import json
import os

from patchhub.bookmarks import BookmarkStore, ReviewedStore


def test_add_remove_idempotent(tmp_path):
    store = BookmarkStore(str(tmp_path / 'bookmarks.json'))
    store.add('abc@example.com')
    store.add('abc@example.com')
    assert store.list() == {'abc@example.com'}
    store.remove('abc@example.com')
    store.remove('abc@example.com')
    assert 'abc@example.com' not in store
    assert store.list() == set()


def test_persisted_on_every_change(tmp_path):
    path = str(tmp_path / 'bookmarks.json')
    store = BookmarkStore(path)
    store.add('two@example.com')
    store.add('one@example.com')
    with open(path, 'r') as fh:
        assert json.load(fh) == ['one@example.com', 'two@example.com']
    assert BookmarkStore(path).list() == {'one@example.com', 'two@example.com'}
    store.remove('two@example.com')
    assert BookmarkStore(path).list() == {'one@example.com'}
    assert not os.path.exists(path + '.tmp')


def test_default_location():
    store = BookmarkStore()
    assert store.path == os.path.join(patchhub.get_data_dir(), 'bookmarked-patchsets.json')


def test_unreadable_file_starts_empty(tmp_path):
    path = tmp_path / 'bookmarks.json'
    path.write_text('{broken')
    store = BookmarkStore(str(path))
    assert store.list() == set()
    store.add('abc@example.com')
    assert BookmarkStore(str(path)).list() == {'abc@example.com'}


def test_storage_cannot_be_created(tmp_path):
    blocker = tmp_path / 'file'
    blocker.write_text('not a directory')
    with pytest.raises(patchhub.CacheError):
        BookmarkStore(str(blocker / 'sub' / 'bookmarks.json'))


def test_reviewed_store(tmp_path):
    path = str(tmp_path / 'reviewed.json')
    store = ReviewedStore(path)
    store.record('series@example.com', 'patch1@example.com')
    store.record('series@example.com', 'patch1@example.com')
    store.record('series@example.com', 'cover@example.com')
    assert ReviewedStore(path).get('series@example.com') == {'patch1@example.com', 'cover@example.com'}
    assert store.get('other@example.com') == set()


def test_reviewed_store_tags(tmp_path):
    path = str(tmp_path / 'reviewed.json')
    store = ReviewedStore(path)
    store.record('series@example.com', 'patch1@example.com', 'Reviewed-by', 'Jane <jane@example.com> ')
    reloaded = ReviewedStore(path)
    assert reloaded.has_tag('series@example.com', 'patch1@example.com', 'Reviewed-by', 'Jane <jane@example.com>')
    assert not reloaded.has_tag('series@example.com', 'patch1@example.com', 'Acked-by', 'Jane <jane@example.com>')
    assert not reloaded.has_tag('series@example.com', 'patch2@example.com', 'Reviewed-by', 'Jane <jane@example.com>')


def test_reviewed_store_reads_message_lists(tmp_path):
    path = tmp_path / 'reviewed.json'
    path.write_text('{"series@example.com": ["patch1@example.com"]}')
    store = ReviewedStore(str(path))
    assert store.get('series@example.com') == {'patch1@example.com'}
    assert not store.has_tag('series@example.com', 'patch1@example.com', 'Reviewed-by', 'Jane <jane@example.com>')
