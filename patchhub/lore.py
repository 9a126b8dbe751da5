# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import re
import io
import gzip
import time
import datetime
import email
import urllib.parse

import requests
import feedparser

import patchhub
import patchhub.model

from typing import Optional, List

from patchhub import TransportError, ProtocolError
from patchhub.model import MailingList, PatchsetSummary, Message, Patchset, Subject

logger = patchhub.logger

# lore serves listings in pages of this size
LORE_PAGE_SIZE = 200
# Total attempts for an idempotent request, including the first one
RETRY_ATTEMPTS = 3
# Fixed pause between attempts, no backoff growth
RETRY_DELAY = 1.0

FEED_QUERY = '((s:patch+OR+s:rfc)+AND+NOT+s:re:)'

RE_PRE_BLOCK = re.compile(r'<pre>(.*?)</pre>', flags=re.S)
RE_LIST_NAME = re.compile(r'<a\s*href=".*?">(.*?)</a>', flags=re.S)
RE_LIST_DESCRIPTION = re.compile(r'</a>\s*(.*?)\s*(?:\*|\Z)', flags=re.S)

# Used for storing our requests session
REQSESSION = None


def get_requests_session() -> requests.Session:
    global REQSESSION
    if REQSESSION is None:
        REQSESSION = requests.session()
        REQSESSION.headers.update({'User-Agent': 'patchhub/%s' % patchhub.__VERSION__})
    return REQSESSION


def msgid_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    path = urllib.parse.urlparse(url).path.strip('/')
    if not path:
        return None
    msgid = urllib.parse.unquote(path.split('/')[-1]).strip('<>')
    if '@' not in msgid:
        return None
    return msgid


def parse_available_lists(page: str) -> List[MailingList]:
    pre_blocks = RE_PRE_BLOCK.findall(page)
    if len(pre_blocks) < 3:
        raise ProtocolError('Unexpected layout of the list index (%s preformatted blocks)' % len(pre_blocks))

    names = [x.strip() for x in RE_LIST_NAME.findall(pre_blocks[2])]
    descriptions = [x.strip() for x in RE_LIST_DESCRIPTION.findall(pre_blocks[2])]
    available = list()
    for name, description in zip(names, descriptions):
        if name == 'all':
            continue
        available.append(MailingList(name, description))

    return available


def filter_lists(available: List[MailingList], prefix: str = '', limit: int = 0) -> List[MailingList]:
    prefix = prefix.strip()
    if prefix:
        return [x for x in available if x.name.startswith(prefix)]
    if limit > 0:
        return available[:limit]
    return list(available)


def _entry_datetime(entry) -> datetime.datetime:
    parsed = entry.get('updated_parsed') or entry.get('published_parsed')
    if not parsed:
        return patchhub.model.EPOCH
    return datetime.datetime(*parsed[:6], tzinfo=datetime.timezone.utc)


def parse_patch_feed(data: bytes, list_name: str = '') -> List[PatchsetSummary]:
    feed = feedparser.parse(io.BytesIO(data))
    if not feed.get('version'):
        reason = feed.get('bozo_exception') or 'not an Atom feed'
        raise ProtocolError('Could not parse patch feed for %s: %s' % (list_name or 'all', reason))

    summaries = list()
    for entry in feed.entries:
        msgid = msgid_from_url(entry.get('link'))
        if not msgid:
            logger.debug('Dropping feed entry without a message-id: %s', entry.get('title'))
            continue
        lsubject = Subject(entry.get('title', ''))
        if lsubject.reply:
            logger.debug('Dropping reply in patch feed: %s', lsubject.full_subject)
            continue

        in_reply_to = None
        thr = entry.get('thr_in-reply-to')
        if isinstance(thr, dict):
            in_reply_to = msgid_from_url(thr.get('href'))

        author = entry.get('author_detail') or dict()
        summaries.append(PatchsetSummary(
            message_id=msgid,
            title=lsubject.subject or lsubject.full_subject,
            version=lsubject.revision,
            counter=lsubject.counter,
            total=lsubject.expected,
            updated=_entry_datetime(entry),
            author_name=author.get('name', '') or entry.get('author', ''),
            author_email=author.get('email', ''),
            list_name=list_name,
            in_reply_to=in_reply_to,
        ))

    return summaries


def _flush_mbox_chunk(chunk: List[bytes], msgs: List[Message]) -> None:
    data = b'\n'.join(chunk)
    if not data.strip():
        return
    msg = email.message_from_bytes(data, policy=patchhub.emlpolicy)
    lmsg = Message.from_email(msg, raw=data.rstrip(b'\n') + b'\n')
    if lmsg is not None:
        msgs.append(lmsg)


def split_mbox(bmbox: bytes) -> List[Message]:
    """Split an mboxrd stream into messages, dropping those without a message-id."""
    msgs = list()
    chunk = list()
    prev_blank = True
    for line in bmbox.replace(b'\r\n', b'\n').split(b'\n'):
        if line.startswith(b'From ') and prev_blank:
            _flush_mbox_chunk(chunk, msgs)
            chunk = list()
            prev_blank = False
            continue
        if re.match(rb'^>+From ', line):
            line = line[1:]
        chunk.append(line)
        prev_blank = not line.strip()
    _flush_mbox_chunk(chunk, msgs)

    deduped = dict()
    for lmsg in msgs:
        if lmsg.msgid in deduped:
            logger.debug('Dropping duplicate of %s', lmsg.msgid)
            continue
        deduped[lmsg.msgid] = lmsg

    return list(deduped.values())


def unpack_thread(content: bytes, url: Optional[str] = None) -> bytes:
    try:
        return gzip.decompress(content)
    except (OSError, EOFError) as ex:
        # Some proxies decompress transparently
        if content.startswith(b'From '):
            return content
        raise ProtocolError('Could not decompress thread: %s' % ex, url)


class LoreClient:
    def __init__(self, base: Optional[str] = None, session: Optional[requests.Session] = None,
                 timeout: Optional[int] = None, attempts: Optional[int] = None):
        if base is None:
            base = patchhub.get_main_config()['lore-base']
        if timeout is None:
            timeout = patchhub.get_config_int('fetch-timeout', 30)
        if attempts is None:
            attempts = patchhub.get_config_int('fetch-retries', RETRY_ATTEMPTS)
        self.base = base.rstrip('/')
        self.session = session if session is not None else get_requests_session()
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.delay = RETRY_DELAY

    def _get(self, url: str) -> requests.Response:
        error = None
        for attempt in range(1, self.attempts + 1):
            try:
                resp = self.session.get(url, timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                    requests.exceptions.ChunkedEncodingError) as ex:
                error = TransportError('Could not retrieve %s: %s' % (url, ex), url)
            except requests.exceptions.RequestException as ex:
                raise TransportError('Could not retrieve %s: %s' % (url, ex), url)
            else:
                if resp.status_code < 500:
                    return resp
                error = TransportError('Server returned an error for %s: %s' % (url, resp.status_code), url)
                resp.close()

            if attempt < self.attempts:
                logger.debug('Attempt %s/%s failed, retrying: %s', attempt, self.attempts, error)
                time.sleep(self.delay)

        logger.debug('Giving up on %s after %s attempts', url, self.attempts)
        raise error

    def request_available_lists(self, offset: int) -> Optional[str]:
        url = '%s/?&o=%s' % (self.base, offset)
        resp = self._get(url)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            resp.close()
            raise ProtocolError('Server returned an error: %s' % resp.status_code, url)
        return resp.text

    def request_patch_feed(self, list_name: str, offset: int) -> Optional[bytes]:
        url = '%s/%s/?x=A&q=%s&o=%s' % (self.base, list_name, FEED_QUERY, offset)
        resp = self._get(url)
        if resp.status_code == 404:
            logger.debug('No feed page at %s', url)
            return None
        if resp.status_code != 200:
            resp.close()
            raise ProtocolError('Server returned an error for %s: %s' % (list_name, resp.status_code), url)
        return resp.content

    def request_thread(self, msgid: str) -> bytes:
        url = '%s/all/%s/t.mbox.gz' % (self.base, urllib.parse.quote_plus(msgid))
        logger.debug('Grabbing thread from %s', url)
        resp = self._get(url)
        if resp.status_code == 404:
            raise ProtocolError('That message-id is not known: %s' % msgid, url)
        if resp.status_code != 200:
            resp.close()
            raise ProtocolError('Server returned an error for %s: %s' % (msgid, resp.status_code), url)
        content = resp.content
        resp.close()
        return unpack_thread(content, url)

    def fetch_available_lists(self) -> List[MailingList]:
        available = dict()
        offset = 0
        while True:
            page = self.request_available_lists(offset)
            if page is None:
                break
            newlists = [x for x in parse_available_lists(page) if x.name not in available]
            if not newlists:
                break
            for mlist in newlists:
                available[mlist.name] = mlist
            offset += LORE_PAGE_SIZE

        return sorted(available.values(), key=lambda x: x.name)

    def list_mailing_lists(self, prefix: str = '', limit: int = 0) -> List[MailingList]:
        if not limit:
            limit = patchhub.get_config_int('lists-limit', 50)
        return filter_lists(self.fetch_available_lists(), prefix, limit)

    def fetch_patchset_page(self, list_name: str, page_index: int) -> List[PatchsetSummary]:
        if page_index < 0:
            raise ValueError('page_index must not be negative')
        data = self.request_patch_feed(list_name, page_index * LORE_PAGE_SIZE)
        if data is None:
            return list()
        return parse_patch_feed(data, list_name)

    def fetch_patchset_detail(self, msgid: str, list_name: str = '') -> Patchset:
        bmbox = self.request_thread(msgid)
        return patchset_from_thread(msgid, bmbox, list_name)


def patchset_from_thread(msgid: str, bmbox: bytes, list_name: str = '') -> Patchset:
    msgs = split_mbox(bmbox)
    if not msgs:
        raise ProtocolError('No messages found in thread for %s' % msgid)
    patchset = patchhub.model.build_patchset(msgid, msgs, list_name)
    if patchset is None:
        raise ProtocolError('Thread does not contain %s' % msgid)
    return patchset
