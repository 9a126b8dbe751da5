# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import os
import json
import pathlib

import patchhub

from typing import Any, Dict, Optional, Set

from patchhub import CacheError

logger = patchhub.logger

BOOKMARKS_FILE = 'bookmarked-patchsets.json'
REVIEWED_FILE = 'reviewed-patchsets.json'


def _write_json(path: str, data: Any) -> None:
    tmpname = f'{path}.tmp'
    with open(tmpname, 'w', encoding='utf-8') as fp:
        json.dump(data, fp, indent=2)
        fp.write('\n')
    os.replace(tmpname, path)


def _read_json(path: str) -> Optional[Any]:
    try:
        with open(path, 'r', encoding='utf-8') as fp:
            return json.load(fp)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, OSError) as ex:
        logger.warning('Ignoring unreadable %s: %s', path, ex)
        return None


def _prepare_path(path: Optional[str], default_name: str) -> str:
    try:
        if path is None:
            path = os.path.join(patchhub.get_data_dir(), default_name)
        pathlib.Path(path).parent.mkdir(parents=True, exist_ok=True)
    except OSError as ex:
        raise CacheError('Unable to create storage for %s: %s' % (default_name, ex), path)
    return path


class BookmarkStore:
    """Patchset ids flagged by the user, rewritten in full on every change."""

    def __init__(self, path: Optional[str] = None):
        self.path = _prepare_path(path, BOOKMARKS_FILE)
        self._ids: Set[str] = set()
        data = _read_json(self.path)
        if isinstance(data, list):
            self._ids = {str(x) for x in data}
        logger.debug('Loaded %s bookmarks from %s', len(self._ids), self.path)

    def _save(self) -> None:
        try:
            _write_json(self.path, sorted(self._ids))
        except OSError as ex:
            raise CacheError('Could not save bookmarks: %s' % ex, self.path)

    def add(self, msgid: str) -> None:
        if msgid in self._ids:
            return
        self._ids.add(msgid)
        self._save()

    def remove(self, msgid: str) -> None:
        if msgid not in self._ids:
            return
        self._ids.discard(msgid)
        self._save()

    def list(self) -> Set[str]:
        return set(self._ids)

    def __contains__(self, msgid: str) -> bool:
        return msgid in self._ids


def _tag(kind: str, identity: str) -> str:
    return '%s: %s' % (kind, identity.strip())


class ReviewedStore:
    """Messages of each patchset that already got a tagged reply from us."""

    def __init__(self, path: Optional[str] = None):
        self.path = _prepare_path(path, REVIEWED_FILE)
        self._reviewed: Dict[str, Dict[str, Set[str]]] = dict()
        data = _read_json(self.path)
        if isinstance(data, dict):
            for psid, msgids in data.items():
                if isinstance(msgids, dict):
                    self._reviewed[psid] = {k: set(v) for k, v in msgids.items()}
                else:
                    # Older records only list the message-ids
                    self._reviewed[psid] = {k: set() for k in msgids}

    def _save(self) -> None:
        data = {psid: {k: sorted(v) for k, v in msgids.items()} for psid, msgids in self._reviewed.items()}
        try:
            _write_json(self.path, data)
        except OSError as ex:
            raise CacheError('Could not save review record: %s' % ex, self.path)

    def record(self, psid: str, msgid: str, kind: Optional[str] = None, identity: Optional[str] = None) -> None:
        tag = _tag(kind, identity) if kind and identity else None
        known = self._reviewed.get(psid, dict()).get(msgid)
        if known is not None and (tag is None or tag in known):
            return
        tags = self._reviewed.setdefault(psid, dict()).setdefault(msgid, set())
        if tag is not None:
            tags.add(tag)
        self._save()

    def has_tag(self, psid: str, msgid: str, kind: str, identity: str) -> bool:
        return _tag(kind, identity) in self._reviewed.get(psid, dict()).get(msgid, set())

    def get(self, psid: str) -> Set[str]:
        return set(self._reviewed.get(psid, dict()))
