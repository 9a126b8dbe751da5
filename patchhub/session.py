# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import os
import json
import concurrent.futures

import patchhub
import patchhub.lore
import patchhub.model
import patchhub.actions
import patchhub.bookmarks

from typing import Optional, List, Dict, Sequence, Iterable

from patchhub import CacheError, ProtocolError, TargetRegistry
from patchhub.cache import CacheStore, CacheKey, GCPolicy
from patchhub.bookmarks import BookmarkStore, ReviewedStore
from patchhub.lore import LoreClient, LORE_PAGE_SIZE
from patchhub.model import MailingList, PatchsetSummary, Patchset
from patchhub.tasks import TaskRunner, Completion

logger = patchhub.logger


class _EmptyPage(Exception):
    pass


def find_cover(summary: PatchsetSummary, processed: Dict[str, PatchsetSummary]) -> Optional[PatchsetSummary]:
    """Find the cover letter of summary's series among already processed entries."""
    if summary.in_reply_to:
        parent = processed.get(summary.in_reply_to)
        if parent is not None and parent.is_cover and parent.version == summary.version:
            return parent
        return None
    # Feeds without threading info, match on what the series has in common
    for other in processed.values():
        if (other.is_cover and other.version == summary.version and other.total == summary.total
                and other.author_email == summary.author_email):
            return other
    return None


def is_representative(summary: PatchsetSummary, processed: Dict[str, PatchsetSummary]) -> bool:
    if summary.counter > 1:
        return False
    if summary.counter == 1 and find_cover(summary, processed) is not None:
        return False
    return True


class FeedState:
    """Representative patchsets of one list, accumulated across feed pages."""

    def __init__(self, list_name: str):
        self.list_name = list_name
        self.processed: Dict[str, PatchsetSummary] = dict()
        self.representative: List[str] = list()
        self.next_page = 0
        self.exhausted = False

    def update(self, summaries: Iterable[PatchsetSummary]) -> int:
        fresh = list()
        for summary in summaries:
            if summary.message_id in self.processed:
                continue
            self.processed[summary.message_id] = summary
            fresh.append(summary.message_id)

        added = 0
        for msgid in fresh:
            if is_representative(self.processed[msgid], self.processed):
                self.representative.append(msgid)
                added += 1
        return added

    def page(self, page_size: int, page_number: int) -> Optional[List[PatchsetSummary]]:
        if page_size < 1 or page_number < 1:
            raise ValueError('page_size and page_number start at 1')
        lower = page_size * (page_number - 1)
        if lower >= len(self.representative):
            return None
        upper = min(lower + page_size, len(self.representative))
        return [self.processed[x] for x in self.representative[lower:upper]]


class LoreSession:
    """One handle owning the archive client and the local stores.

    Every retrieval goes through the cache first, and only hits the archive
    on a miss or an explicit refresh.
    """

    def __init__(self, client: LoreClient, cache: CacheStore, bookmarks: BookmarkStore,
                 reviewed: Optional[ReviewedStore] = None, targets: Optional[TargetRegistry] = None):
        self.client = client
        self.cache = cache
        self.bookmarks = bookmarks
        self.reviewed = reviewed
        self.targets = targets
        self.feeds: Dict[str, FeedState] = dict()
        self._runner: Optional[TaskRunner] = None

    @classmethod
    def open(cls, cachedir: Optional[str] = None, datadir: Optional[str] = None) -> 'LoreSession':
        """Open the stores, raises CacheError if any of them cannot be created."""
        cache = CacheStore(cachedir)
        bmpath = rvpath = None
        if datadir:
            bmpath = os.path.join(datadir, patchhub.bookmarks.BOOKMARKS_FILE)
            rvpath = os.path.join(datadir, patchhub.bookmarks.REVIEWED_FILE)
        bookmarks = BookmarkStore(bmpath)
        reviewed = ReviewedStore(rvpath)
        return cls(LoreClient(), cache, bookmarks, reviewed)

    @property
    def runner(self) -> TaskRunner:
        if self._runner is None:
            self._runner = TaskRunner()
        return self._runner

    def close(self) -> None:
        if self._runner is not None:
            self._runner.shutdown()
            self._runner = None

    def __enter__(self) -> 'LoreSession':
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _retrieve(self, key: CacheKey, fetcher, refresh: bool) -> bytes:
        if refresh:
            return self.cache.refetch(key, fetcher)
        return self.cache.get_or_fetch(key, fetcher)

    def available_lists(self, prefix: str = '', limit: int = 0, refresh: bool = False) -> List[MailingList]:
        def _fetch() -> bytes:
            available = self.client.fetch_available_lists()
            return json.dumps([x.as_dict() for x in available]).encode()

        key = CacheKey('lists', self.client.base)
        payload = self._retrieve(key, _fetch, refresh)
        try:
            available = [MailingList(x['name'], x.get('description', '')) for x in json.loads(payload)]
        except (ValueError, KeyError, TypeError):
            logger.debug('Discarding unreadable list index from cache')
            self.cache.invalidate(key)
            payload = self.cache.get_or_fetch(key, _fetch)
            available = [MailingList(x['name'], x.get('description', '')) for x in json.loads(payload)]
        if not limit:
            limit = patchhub.get_config_int('lists-limit', 50)
        return patchhub.lore.filter_lists(available, prefix, limit)

    def feed_page(self, list_name: str, page_index: int, refresh: bool = False) -> List[PatchsetSummary]:
        if page_index < 0:
            raise ValueError('page_index must not be negative')

        def _fetch() -> bytes:
            data = self.client.request_patch_feed(list_name, page_index * LORE_PAGE_SIZE)
            if data is None:
                raise _EmptyPage()
            # Never cache what we cannot parse
            patchhub.lore.parse_patch_feed(data, list_name)
            return data

        key = CacheKey('feed', list_name, page_index)
        try:
            payload = self._retrieve(key, _fetch, refresh)
        except _EmptyPage:
            return list()
        try:
            return patchhub.lore.parse_patch_feed(payload, list_name)
        except ProtocolError:
            logger.debug('Cached feed page for %s is unusable, refetching', list_name)
            try:
                payload = self.cache.refetch(key, _fetch)
            except _EmptyPage:
                return list()
            return patchhub.lore.parse_patch_feed(payload, list_name)

    def patchset(self, msgid: str, list_name: str = '', refresh: bool = False) -> Patchset:
        fetched = list()

        def _fetch() -> bytes:
            fetched.append(msgid)
            return self.client.request_thread(msgid)

        key = CacheKey('thread', msgid)
        payload = self._retrieve(key, _fetch, refresh)
        try:
            return patchhub.lore.patchset_from_thread(msgid, payload, list_name)
        except ProtocolError:
            if fetched:
                raise
            logger.debug('Cached thread for %s is unusable, refetching', msgid)
            payload = self.cache.refetch(key, _fetch)
            return patchhub.lore.patchset_from_thread(msgid, payload, list_name)

    def patchsets(self, msgids: Sequence[str], list_name: str = '') -> Dict[str, Completion]:
        """Fetch several patchsets in parallel and wait for all of them, keyed by message-id.

        These are not queued for poll(), so switching the runner context
        does not affect them.
        """
        futures = dict()
        for msgid in dict.fromkeys(msgids):
            futures[msgid] = self.runner.submit(msgid, self.patchset, msgid, list_name, queued=False)
        concurrent.futures.wait(futures.values())
        results: Dict[str, Completion] = dict()
        for msgid, future in futures.items():
            error = future.exception()
            result = future.result() if error is None else None
            results[msgid] = Completion(msgid, self.runner.context, result, error)
        return results

    def process_representative_patches(self, list_name: str, n: int, refresh: bool = False) -> FeedState:
        """Pull feed pages until at least n representative patchsets are known or the feed ends.

        With refresh the accumulated state is dropped and every page needed
        is fetched again from the archive.
        """
        if refresh:
            self.reset_feed(list_name)
        state = self.feeds.setdefault(list_name, FeedState(list_name))
        while len(state.representative) < n and not state.exhausted:
            summaries = self.feed_page(list_name, state.next_page, refresh=refresh)
            state.next_page += 1
            if not summaries:
                logger.debug('Reached the end of the feed for %s', list_name)
                state.exhausted = True
                break
            added = state.update(summaries)
            logger.debug('Page %s of %s added %s patchsets', state.next_page, list_name, added)
        return state

    def get_feed_page(self, list_name: str, page_size: int, page_number: int,
                      refresh: bool = False) -> Optional[List[PatchsetSummary]]:
        """Representative patchsets on page_number (1-based), None past the end of the feed."""
        state = self.process_representative_patches(list_name, page_size * page_number, refresh=refresh)
        return state.page(page_size, page_number)

    def reset_feed(self, list_name: str) -> None:
        self.feeds.pop(list_name, None)

    def bookmark(self, msgid: str) -> None:
        self.bookmarks.add(msgid)

    def unbookmark(self, msgid: str) -> None:
        self.bookmarks.remove(msgid)

    def is_bookmarked(self, msgid: str) -> bool:
        return msgid in self.bookmarks

    def gc(self, policy: Optional[GCPolicy] = None) -> List[CacheKey]:
        if policy is None:
            policy = GCPolicy.from_config()
        return self.cache.run_gc(policy)

    def apply(self, patchset: Patchset, targets: Sequence[str], tool=None) -> List[patchhub.actions.ActionOutcome]:
        registry = self.targets if self.targets is not None else patchhub.get_targets()
        return patchhub.actions.apply_patchset(patchset, targets, registry=registry, tool=tool)

    def reply(self, patchset: Patchset, counters: Iterable[int], kind: str, identity: Optional[str] = None, *,
              dryrun: bool, tool=None) -> List[patchhub.actions.ActionOutcome]:
        if identity is None:
            identity = patchhub.get_replier_identity()
        selected = patchhub.model.select_messages(patchset, counters)
        outcomes = patchhub.actions.reply_patchset(patchset, selected, kind, identity, dryrun=dryrun, tool=tool,
                                                   reviewed=self.reviewed)
        if not dryrun and any(x.ok for x in outcomes):
            # The cached thread predates our replies
            self.cache.invalidate(CacheKey('thread', patchset.message_id))
        return outcomes

    def reviewed_messages(self, psid: str) -> List[str]:
        if self.reviewed is None:
            return list()
        return sorted(self.reviewed.get(psid))


def open_session() -> Optional[LoreSession]:
    try:
        return LoreSession.open()
    except CacheError as ex:
        logger.critical('Unable to set up local storage: %s', ex)
        return None
