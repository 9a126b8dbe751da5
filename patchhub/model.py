# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import re
import sys
import datetime
import email.utils
import email.message

import patchhub

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple, List, Dict, Set, Iterable

logger = patchhub.logger

TAG_KINDS = ('Reviewed-by', 'Acked-by', 'Tested-by')
TRAILER_RE = re.compile(r'^(Reviewed-by|Acked-by|Tested-by):[ \t]*(.+)$', flags=re.M)
DIFF_RE = re.compile(r'^(---.*\n\+\+\+|GIT binary patch|diff --git \w/\S+ \w/\S+)', flags=re.M | re.I)

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def intern_list_name(name: str) -> str:
    return sys.intern(name.strip())


def find_trailers(body: str) -> List[Tuple[str, str]]:
    """Return (kind, identity) pairs for every review trailer line in body.

    Only the three recognized kinds are returned, keyword case must match
    exactly, and quoted lines never match. Anything below the signature
    separator is ignored.
    """
    if not body:
        return list()
    body = body.replace('\r', '')
    body = body.split('\n-- \n', 1)[0]
    trailers = list()
    for matches in TRAILER_RE.finditer(body):
        kind, identity = matches.groups()
        identity = identity.strip()
        if not identity:
            continue
        trailers.append((kind, identity))
    return trailers


class Subject:
    def __init__(self, subject: Optional[str]):
        self.full_subject = None
        self.subject = None
        self.reply = False
        self.rfc = False
        self.revision = 1
        self.counter = 1
        self.expected = 1
        self.counters_inferred = True

        subject = re.sub(r'\s+', ' ', patchhub.clean_header(subject)).strip()
        self.full_subject = subject

        # Is it a reply?
        if re.search(r'^(Re|Aw|Fwd):', subject, re.I) or re.search(r'^\w{2,3}:\s*\[', subject):
            self.reply = True
            self.subject = subject
            return

        # Remove any brackets inside brackets
        while True:
            oldsubj = subject
            subject = re.sub(r'\[([^]]*)\[([^\[\]]*)]', r'[\1\2]', subject)
            subject = re.sub(r'\[([^]]*)]([^\[\]]*)]', r'[\1\2]', subject)
            if oldsubj == subject:
                break

        while subject.find('[') == 0:
            matches = re.search(r'^\[([^]]*)]', subject)
            if not matches:
                break

            bracketed = matches.groups()[0].strip()
            # Fix [PATCHv3] to be properly [PATCH v3]
            bracketed = re.sub(r'(patch)(v\d+)', r'\1 \2', bracketed, flags=re.I)

            for chunk in bracketed.split():
                chunk = chunk.strip(',;')
                if re.search(r'^\d{1,4}/\d{1,4}$', chunk):
                    counters = chunk.split('/')
                    self.counter = int(counters[0])
                    self.expected = int(counters[1])
                    self.counters_inferred = False
                elif re.search(r'^v\d+$', chunk, re.IGNORECASE):
                    self.revision = int(chunk[1:])
                elif chunk.lower().find('rfc') == 0:
                    self.rfc = True
            subject = re.sub(r'^\s*\[[^]]*]\s*', '', subject)
        self.subject = subject

        # Handle [PATCH 6/5]
        if self.counter > self.expected:
            self.expected = self.counter

    def __repr__(self):
        return 'Subject(%r, v%s, %s/%s)' % (self.subject, self.revision, self.counter, self.expected)


@dataclass(frozen=True)
class MailingList:
    name: str
    description: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'name', intern_list_name(self.name))

    def as_dict(self) -> dict:
        return {'name': self.name, 'description': self.description}


@dataclass(frozen=True)
class PatchsetSummary:
    """One row of a patch feed page."""

    message_id: str
    title: str
    version: int = 1
    counter: int = 1
    total: int = 1
    updated: datetime.datetime = EPOCH
    author_name: str = ''
    author_email: str = ''
    list_name: str = ''
    in_reply_to: Optional[str] = None

    @property
    def is_cover(self) -> bool:
        return self.counter == 0

    def as_dict(self) -> dict:
        return {
            'message_id': self.message_id,
            'title': self.title,
            'version': self.version,
            'counter': self.counter,
            'total': self.total,
            'updated': self.updated.isoformat(),
            'author_name': self.author_name,
            'author_email': self.author_email,
            'list_name': self.list_name,
            'in_reply_to': self.in_reply_to,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PatchsetSummary':
        data = dict(data)
        data['updated'] = datetime.datetime.fromisoformat(data['updated'])
        return cls(**data)


@dataclass(frozen=True)
class Message:
    msgid: str
    subject: str
    in_reply_to: Optional[str] = None
    references: Tuple[str, ...] = ()
    from_name: str = ''
    from_email: str = ''
    to: str = ''
    cc: str = ''
    date: datetime.datetime = EPOCH
    revision: int = 1
    counter: int = 1
    expected: int = 1
    reply: bool = False
    has_diff: bool = False
    body: str = ''
    raw: bytes = b''
    trailers: Tuple[Tuple[str, str], ...] = ()

    @property
    def is_cover(self) -> bool:
        return self.counter == 0

    @classmethod
    def from_email(cls, msg: email.message.Message, raw: Optional[bytes] = None) -> Optional['Message']:
        msgid = patchhub.get_clean_msgid(msg)
        if not msgid:
            logger.debug('Dropping message without a usable Message-Id: %s', msg.get('Subject'))
            return None

        lsubject = Subject(msg.get('Subject'))
        in_reply_to = patchhub.get_clean_msgid(msg, header='In-Reply-To')
        refs = list()
        for ref in email.utils.getaddresses([str(x) for x in msg.get_all('references', [])]):
            if ref[1] and ref[1] not in refs:
                refs.append(ref[1])

        fromname = fromemail = ''
        fromdata = email.utils.getaddresses([patchhub.clean_header(str(x)) for x in msg.get_all('from', [])])
        if fromdata:
            fromname, fromemail = fromdata[0]
            if not len(fromname.strip()):
                fromname = fromemail

        msgdate = msg.get('Date')
        date = EPOCH
        if msgdate:
            try:
                date = email.utils.parsedate_to_datetime(str(msgdate))
            except (TypeError, ValueError):
                logger.debug('Unparseable date in %s: %s', msgid, msgdate)
        # Force it to UTC if it's naive
        if date.tzinfo is None:
            date = date.replace(tzinfo=datetime.timezone.utc)

        body = get_plain_body(msg)
        if raw is None:
            raw = msg.as_bytes(policy=patchhub.emlpolicy)

        return cls(
            msgid=msgid,
            subject=lsubject.full_subject,
            in_reply_to=in_reply_to,
            references=tuple(refs),
            from_name=fromname,
            from_email=fromemail,
            to=patchhub.clean_header(msg.get('To')),
            cc=patchhub.clean_header(msg.get('Cc')),
            date=date,
            revision=lsubject.revision,
            counter=lsubject.counter,
            expected=lsubject.expected,
            reply=lsubject.reply,
            has_diff=bool(DIFF_RE.search(body)),
            body=body,
            raw=raw,
            trailers=tuple(find_trailers(body)),
        )


def get_plain_body(msg: email.message.Message) -> str:
    body = None
    mcharset = msg.get_content_charset() or 'utf-8'
    for part in msg.walk():
        cte = part.get_content_type()
        if cte.find('/plain') < 0 and cte.find('/x-patch') < 0:
            continue
        payload = part.get_payload(decode=True)
        if payload is None:
            continue
        pcharset = part.get_content_charset() or mcharset
        try:
            payload = payload.decode(pcharset, errors='replace')
        except LookupError:
            payload = payload.decode('utf-8', errors='replace')
        if body is None:
            body = payload
            continue
        # Prefer the part that carries the diff
        if DIFF_RE.search(payload):
            body = payload

    return body or ''


@dataclass(frozen=True)
class Patchset:
    message_id: str
    title: str
    version: int
    total: int
    updated: datetime.datetime
    author: str
    list_name: str
    messages: Tuple[Message, ...] = field(default_factory=tuple)

    @property
    def cover(self) -> Optional[Message]:
        for lmsg in self.messages:
            if lmsg.is_cover:
                return lmsg
        return None

    @property
    def patches(self) -> List[Message]:
        return sorted([x for x in self.messages if not x.is_cover], key=lambda x: x.counter)

    def get_message(self, msgid: str) -> Optional[Message]:
        for lmsg in self.messages:
            if lmsg.msgid == msgid:
                return lmsg
        return None


def build_patchset(msgid: str, msgs: Iterable[Message], list_name: str = '') -> Optional[Patchset]:
    """Pick the series that msgid belongs to out of a full thread.

    Follow-up trailers are attributed to the series message they reply to,
    directly or through intermediate replies.
    """
    by_id = dict()
    for lmsg in msgs:
        if lmsg.msgid not in by_id:
            by_id[lmsg.msgid] = lmsg

    want = by_id.get(msgid)
    if want is None:
        return None
    revision = want.revision

    series = dict()
    for lmsg in by_id.values():
        if lmsg.reply or lmsg.revision != revision:
            continue
        if not lmsg.is_cover and not lmsg.has_diff:
            continue
        if lmsg.counter in series:
            logger.debug('Ignoring duplicate %s/%s: %s', lmsg.counter, lmsg.expected, lmsg.msgid)
            continue
        series[lmsg.counter] = lmsg

    if not series:
        # A lone message that is neither a patch nor a cover
        series[want.counter] = want

    members = {x.msgid: x for x in series.values()}
    extra = dict()
    for lmsg in by_id.values():
        if lmsg.msgid in members or not lmsg.reply or not lmsg.trailers:
            continue
        parent = lmsg.in_reply_to
        seen = set()
        while (parent and parent not in members and parent in by_id and by_id[parent].reply
               and parent not in seen):
            seen.add(parent)
            parent = by_id[parent].in_reply_to
        if parent not in members:
            continue
        logger.debug('Follow-up %s carries trailers for %s', lmsg.msgid, parent)
        extra.setdefault(parent, list()).extend(lmsg.trailers)

    ordered = list()
    for counter in sorted(series):
        lmsg = series[counter]
        if lmsg.msgid in extra:
            trailers = list(lmsg.trailers)
            for trailer in extra[lmsg.msgid]:
                if trailer not in trailers:
                    trailers.append(trailer)
            lmsg = replace(lmsg, trailers=tuple(trailers))
        ordered.append(lmsg)

    first = ordered[0]
    return Patchset(
        message_id=msgid,
        title=Subject(first.subject).subject or first.subject,
        version=revision,
        total=max(x.expected for x in ordered),
        updated=max(x.date for x in by_id.values()),
        author=patchhub.format_addrs([(want.from_name, want.from_email)]),
        list_name=list_name,
        messages=tuple(ordered),
    )


class TagLedger:
    """Which reviewer tags exist on which messages of a patchset."""

    def __init__(self, patchset: Patchset):
        self.by_kind: Dict[str, Set[str]] = {kind: set() for kind in TAG_KINDS}
        self.per_message: Dict[str, Set[Tuple[str, str]]] = dict()
        for lmsg in patchset.messages:
            applied = set()
            for kind, identity in lmsg.trailers:
                self.by_kind[kind].add(identity)
                applied.add((kind, identity))
            self.per_message[lmsg.msgid] = applied

    def has_tag(self, msgid: str, kind: str, identity: str) -> bool:
        return (kind, identity.strip()) in self.per_message.get(msgid, set())

    def tagged_messages(self, kind: str, identity: str) -> List[str]:
        identity = identity.strip()
        return [msgid for msgid, applied in self.per_message.items() if (kind, identity) in applied]

    def identities(self, kind: str) -> Set[str]:
        return set(self.by_kind.get(kind, set()))


def select_messages(patchset: Patchset, counters: Iterable[int]) -> List[Message]:
    """Pick messages by their position in the series, 0 being the cover letter."""
    by_counter = {x.counter: x for x in patchset.messages}
    selected = list()
    for counter in counters:
        if counter not in by_counter:
            raise IndexError('No message %s/%s in %s' % (counter, patchset.total, patchset.message_id))
        if by_counter[counter] not in selected:
            selected.append(by_counter[counter])
    return selected
