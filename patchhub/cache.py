# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import os
import json
import time
import shutil
import hashlib
import pathlib
import tempfile
import threading

import patchhub

from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional, Callable, Dict, List, Tuple

from patchhub import CacheError

logger = patchhub.logger

PAYLOAD_FILE = 'payload'
META_FILE = 'meta.json'
STAGING_PREFIX = '.tmp-'


@dataclass(frozen=True)
class CacheKey:
    kind: str
    identity: str
    page: Optional[int] = None

    @property
    def identifier(self) -> str:
        if self.page is None:
            return self.identity
        return '%s#%s' % (self.identity, self.page)

    @property
    def slug(self) -> str:
        return hashlib.sha1(self.identifier.encode()).hexdigest()


@dataclass(frozen=True)
class GCPolicy:
    # 0 disables the bound
    max_entries: int = 0
    max_age: float = 0

    @classmethod
    def from_config(cls) -> 'GCPolicy':
        return cls(
            max_entries=patchhub.get_config_int('cache-max-entries', 1000),
            max_age=patchhub.get_config_int('cache-expire', 4320) * 60,
        )


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    retrieved: float
    path: str


class CacheStore:
    """Durable keyed cache in front of remote fetches.

    Only successful fetches are written, and each entry is staged in a
    temporary directory before being renamed into place, so an entry either
    exists completely or not at all. Concurrent callers asking for the same
    key share a single in-flight fetch. Local I/O errors after startup turn
    the store into a pass-through instead of failing the caller.
    """

    def __init__(self, cachedir: Optional[str] = None, clock: Callable[[], float] = time.time):
        try:
            if cachedir is None:
                cachedir = patchhub.get_cache_dir()
            pathlib.Path(cachedir).mkdir(parents=True, exist_ok=True)
        except OSError as ex:
            raise CacheError('Unable to create cache directory: %s' % ex, cachedir)
        self.cachedir = cachedir
        self.clock = clock
        self.passthrough = False
        self._lock = threading.Lock()
        self._inflight: Dict[CacheKey, Future] = dict()

    def _entry_dir(self, key: CacheKey) -> str:
        return os.path.join(self.cachedir, key.kind, key.slug)

    def _degrade(self, ex: Exception) -> None:
        if not self.passthrough:
            logger.warning('Cache is not usable, continuing without it: %s', ex)
        self.passthrough = True

    def _read(self, key: CacheKey) -> Optional[bytes]:
        if self.passthrough:
            return None
        fullpath = os.path.join(self._entry_dir(key), PAYLOAD_FILE)
        try:
            with open(fullpath, 'rb') as fh:
                logger.debug('Using cache %s for %s', fullpath, key.identifier)
                return fh.read()
        except FileNotFoundError:
            logger.debug('Cache miss for %s', key.identifier)
        except OSError as ex:
            logger.warning('Could not read cache entry for %s: %s', key.identifier, ex)
        return None

    def _write(self, key: CacheKey, payload: bytes) -> None:
        if self.passthrough:
            return
        edir = self._entry_dir(key)
        kinddir = os.path.dirname(edir)
        try:
            pathlib.Path(kinddir).mkdir(parents=True, exist_ok=True)
            staging = tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=kinddir)
            with open(os.path.join(staging, PAYLOAD_FILE), 'wb') as fh:
                fh.write(payload)
            meta = {
                'kind': key.kind,
                'identity': key.identity,
                'page': key.page,
                'retrieved': self.clock(),
            }
            with open(os.path.join(staging, META_FILE), 'w') as fh:
                json.dump(meta, fh)
            if os.path.exists(edir):
                shutil.rmtree(edir)
            os.rename(staging, edir)
            logger.debug('Saved cache %s for %s', edir, key.identifier)
        except OSError as ex:
            self._degrade(CacheError(str(ex), edir))

    def get(self, key: CacheKey) -> Optional[bytes]:
        with self._lock:
            return self._read(key)

    def get_or_fetch(self, key: CacheKey, fetcher: Callable[[], bytes]) -> bytes:
        return self._fetch(key, fetcher, usecache=True)

    def refetch(self, key: CacheKey, fetcher: Callable[[], bytes]) -> bytes:
        """Replace the entry with a fresh fetch, keeping the old one if that fails."""
        return self._fetch(key, fetcher, usecache=False)

    def _fetch(self, key: CacheKey, fetcher: Callable[[], bytes], usecache: bool) -> bytes:
        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                if usecache:
                    payload = self._read(key)
                    if payload is not None:
                        return payload
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.debug('Waiting for in-flight fetch of %s', key.identifier)
            return future.result()

        try:
            payload = fetcher()
        except BaseException as ex:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(ex)
            raise

        self._write(key, payload)
        with self._lock:
            self._inflight.pop(key, None)
        future.set_result(payload)
        return payload

    def invalidate(self, key: CacheKey) -> bool:
        edir = self._entry_dir(key)
        with self._lock:
            if not os.path.exists(edir):
                return False
            try:
                shutil.rmtree(edir)
            except OSError as ex:
                self._degrade(CacheError(str(ex), edir))
                return False
        logger.debug('Removed cache %s for %s', edir, key.identifier)
        return True

    def entries(self) -> List[CacheEntry]:
        found = list()
        try:
            kinds = os.listdir(self.cachedir)
        except OSError as ex:
            raise CacheError('Unable to list cache: %s' % ex, self.cachedir)
        for kind in kinds:
            kinddir = os.path.join(self.cachedir, kind)
            if not os.path.isdir(kinddir):
                continue
            try:
                slugs = os.listdir(kinddir)
            except OSError as ex:
                raise CacheError('Unable to list cache: %s' % ex, kinddir)
            for slug in slugs:
                if slug.startswith(STAGING_PREFIX):
                    continue
                edir = os.path.join(kinddir, slug)
                try:
                    with open(os.path.join(edir, META_FILE), 'r') as fh:
                        meta = json.load(fh)
                    key = CacheKey(kind, meta['identity'], meta.get('page'))
                    retrieved = float(meta['retrieved'])
                except (OSError, ValueError, KeyError, TypeError):
                    # Unreadable entries are the first to go
                    key = CacheKey(kind, slug)
                    retrieved = 0.0
                found.append(CacheEntry(key, retrieved, edir))
        return found

    def run_gc(self, policy: GCPolicy) -> List[CacheKey]:
        """Remove entries older than max_age, then the oldest ones above max_entries."""
        with self._lock:
            # Staging dirs of in-flight fetches are still being written
            if not self._inflight:
                self._clean_staging()
            entries = sorted(self.entries(), key=lambda x: (x.retrieved, x.path))
            now = self.clock()
            evict: List[CacheEntry] = list()
            keep: List[CacheEntry] = list()
            for entry in entries:
                if policy.max_age and now - entry.retrieved > policy.max_age:
                    evict.append(entry)
                else:
                    keep.append(entry)
            if policy.max_entries and len(keep) > policy.max_entries:
                excess = len(keep) - policy.max_entries
                evict += keep[:excess]

            removed = list()
            for entry in evict:
                logger.debug('Cleaning up cache: %s', entry.key.identifier)
                try:
                    shutil.rmtree(entry.path)
                except OSError as ex:
                    logger.warning('Could not remove cache entry %s: %s', entry.path, ex)
                    continue
                removed.append(entry.key)

        if removed:
            logger.info('Removed %s cache entries', len(removed))
        return removed

    def _clean_staging(self) -> None:
        try:
            kinds = os.listdir(self.cachedir)
        except OSError as ex:
            raise CacheError('Unable to list cache: %s' % ex, self.cachedir)
        for kind in kinds:
            kinddir = os.path.join(self.cachedir, kind)
            if not os.path.isdir(kinddir):
                continue
            try:
                slugs = os.listdir(kinddir)
            except OSError as ex:
                raise CacheError('Unable to list cache: %s' % ex, kinddir)
            for slug in slugs:
                if slug.startswith(STAGING_PREFIX):
                    shutil.rmtree(os.path.join(kinddir, slug), ignore_errors=True)

    def stats(self) -> Tuple[int, Optional[float]]:
        entries = self.entries()
        if not entries:
            return 0, None
        return len(entries), min(x.retrieved for x in entries)
