# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import os
import re
import enum
import shlex
import tempfile
import email.utils
import email.message

import patchhub

from dataclasses import dataclass
from typing import Optional, List, Sequence, Tuple, Union

from patchhub import (PatchHubError, ConfigError, CacheError, TargetNotConfigured, ExternalToolError,
                      ExternalToolMissing, ExternalToolFailed, TreeTarget, TargetRegistry)
from patchhub.model import Patchset, Message, TagLedger, TAG_KINDS

logger = patchhub.logger

AM_SEPARATOR = b'From git@z Thu Jan  1 00:00:00 1970\n'
ALREADY_TAGGED = 'already tagged'


class OutcomeStatus(enum.Enum):
    APPLIED = 'applied'
    APPLIED_WITH_CONFLICTS = 'applied-with-conflicts'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass(frozen=True)
class ActionOutcome:
    # Target name for apply, message-id for reply
    subject: str
    status: OutcomeStatus
    detail: str = ''
    error: Optional[Exception] = None
    message: Optional[email.message.EmailMessage] = None
    dryrun: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.APPLIED, OutcomeStatus.APPLIED_WITH_CONFLICTS)

    def __str__(self):
        if self.detail:
            return '%s: %s (%s)' % (self.subject, self.status.value, self.detail)
        return '%s: %s' % (self.subject, self.status.value)


def _failed(subject: str, error: Exception, message: Optional[email.message.EmailMessage] = None,
            dryrun: bool = False) -> ActionOutcome:
    logger.debug('%s failed: %s', subject, error)
    return ActionOutcome(subject, OutcomeStatus.FAILED, detail=str(error), error=error,
                         message=message, dryrun=dryrun)


def _skipped(subject: str, reason: str) -> ActionOutcome:
    logger.debug('Skipping %s: %s', subject, reason)
    return ActionOutcome(subject, OutcomeStatus.SKIPPED, detail=reason)


class ApplyResult:
    def __init__(self, applied: int, total: int, output: str = '', conflicts: bool = False):
        self.applied = applied
        self.total = total
        self.output = output
        self.conflicts = conflicts


def build_am_mbox(patches: Sequence[bytes]) -> bytes:
    # Patches are already unescaped, so this goes to git-am as a plain mbox
    bmbox = b''
    for patch in patches:
        bmbox += AM_SEPARATOR + patch
        if not patch.endswith(b'\n'):
            bmbox += b'\n'
    return bmbox


class GitAmTool:
    """Apply an ordered series to a target tree with git-am."""

    name = 'git-am'

    def __init__(self, amflags: Optional[str] = None):
        if amflags is None:
            amflags = patchhub.get_main_config().get('am-flags', '') or ''
        sp = shlex.shlex(amflags, posix=True)
        sp.whitespace_split = True
        self.amargs = list(sp)

    def check(self) -> None:
        if not patchhub.which('git'):
            raise ExternalToolMissing('git')

    def preflight(self, target: TreeTarget) -> Optional[str]:
        if not os.path.isdir(target.path):
            raise ExternalToolFailed(self.name, 'no such directory: %s' % target.path)
        ecode, out = patchhub.git_run_command(target.path, ['rev-parse', '--show-toplevel'], logstderr=True)
        if ecode > 0:
            raise ExternalToolFailed(self.name, 'not a git tree: %s' % target.path, ecode)
        if patchhub.git_get_repo_status(target.path):
            return 'working tree has uncommitted changes'
        return None

    def apply(self, target: TreeTarget, patches: Sequence[bytes]) -> ApplyResult:
        if target.branch and patchhub.git_get_current_branch(target.path) != target.branch:
            ecode, out = patchhub.git_run_command(target.path, ['checkout', target.branch], logstderr=True)
            if ecode > 0:
                raise ExternalToolFailed('git-checkout', out.strip(), ecode)

        ambytes = build_am_mbox(patches)
        ecode, out = patchhub.git_run_command(target.path, ['am'] + self.amargs, stdin=ambytes, logstderr=True)
        applied = len(re.findall(r'^Applying: ', out, flags=re.M))
        if ecode == 0:
            return ApplyResult(applied, len(patches), out.strip())
        if re.search(r'^Patch failed at ', out, flags=re.M):
            # Stopped partway, the am session is left for the user to resolve
            return ApplyResult(max(applied - 1, 0), len(patches), out.strip(), conflicts=True)
        raise ExternalToolFailed(self.name, out.strip(), ecode)


class GitSendEmailTool:
    """Dispatch a composed message with git-send-email."""

    name = 'git-send-email'

    def __init__(self, options: Optional[str] = None):
        if options is None:
            options = patchhub.get_main_config().get('send-email-options', '') or ''
        sp = shlex.shlex(options, posix=True)
        sp.whitespace_split = True
        self.options = list(sp)

    def check(self) -> None:
        if not patchhub.which('git'):
            raise ExternalToolMissing('git')
        ecode, out = patchhub.git_run_command(None, ['--exec-path'])
        if ecode > 0 or not os.path.exists(os.path.join(out.strip(), 'git-send-email')):
            raise ExternalToolMissing(self.name)

    def send(self, bdata: bytes, dryrun: bool) -> str:
        with tempfile.TemporaryDirectory(prefix='patchhub-reply-') as tfd:
            replyfile = os.path.join(tfd, 'reply.eml')
            with open(replyfile, 'wb') as fh:
                fh.write(bdata)
            args = ['send-email', '--confirm=never', '--suppress-cc=self'] + self.options
            if dryrun:
                args.append('--dry-run')
            args.append(replyfile)
            ecode, out = patchhub.git_run_command(None, args, logstderr=True)
        if ecode > 0:
            raise ExternalToolFailed(self.name, out.strip(), ecode)
        return out


def resolve_targets(names: Sequence[str],
                    registry: TargetRegistry) -> List[Tuple[str, Union[TreeTarget, TargetNotConfigured]]]:
    resolved = list()
    for name in names:
        try:
            resolved.append((name, registry.get(name)))
        except TargetNotConfigured as ex:
            resolved.append((name, ex))
    return resolved


def apply_to_target(target: TreeTarget, patches: Sequence[bytes], tool) -> ActionOutcome:
    try:
        reason = tool.preflight(target)
        if reason:
            return _skipped(target.name, reason)
        result = tool.apply(target, patches)
    except ExternalToolError as ex:
        return _failed(target.name, ex)
    except OSError as ex:
        return _failed(target.name, ExternalToolFailed(tool.name, str(ex)))

    if result.conflicts:
        detail = 'stopped after %s of %s patches\n%s' % (result.applied, result.total, result.output)
        return ActionOutcome(target.name, OutcomeStatus.APPLIED_WITH_CONFLICTS, detail=detail)
    return ActionOutcome(target.name, OutcomeStatus.APPLIED, detail='%s patches applied' % result.total)


def apply_patchset(patchset: Patchset, targets: Sequence[str], registry: Optional[TargetRegistry] = None,
                   tool=None) -> List[ActionOutcome]:
    """Apply the series to every named target, one outcome per target.

    Patches always go to the tool in series order. A target failing has no
    effect on the others.
    """
    if registry is None:
        registry = patchhub.get_targets()
    if tool is None:
        tool = GitAmTool()

    # Unknown names are reported before any process gets spawned
    resolved = resolve_targets(targets, registry)
    patches = [x.raw for x in patchset.patches]

    tool_error = None
    try:
        tool.check()
    except ExternalToolMissing as ex:
        tool_error = ex

    outcomes = list()
    for name, target in resolved:
        if isinstance(target, TargetNotConfigured):
            outcomes.append(_failed(name, target))
            continue
        if not patches:
            outcomes.append(_skipped(name, 'no patches in %s' % patchset.message_id))
            continue
        if tool_error is not None:
            outcomes.append(_failed(name, tool_error))
            continue
        logger.info('Applying %s patches from %s to %s', len(patches), patchset.message_id, target)
        outcomes.append(apply_to_target(target, patches, tool))

    return outcomes


def quote_body(body: str) -> str:
    quoted = list()
    for line in body.replace('\r', '').rstrip('\n').split('\n'):
        if line:
            quoted.append('> ' + line)
        else:
            quoted.append('>')
    return '\n'.join(quoted)


def compose_reply(lmsg: Message, kind: str, identity: str) -> email.message.EmailMessage:
    """Build a reply to lmsg carrying a single trailer.

    Date and Message-Id are left to the sending tool, so composing the same
    reply twice yields the same bytes.
    """
    msg = email.message.EmailMessage()
    msg['From'] = identity
    myemail = email.utils.parseaddr(identity)[1]

    if lmsg.from_email:
        msg['To'] = patchhub.format_addrs([(lmsg.from_name, lmsg.from_email)])
    excludes = {myemail, lmsg.from_email}
    allcc = list()
    for pair in email.utils.getaddresses([lmsg.to, lmsg.cc]):
        if not pair[1] or '@' not in pair[1] or pair[1] in excludes:
            continue
        excludes.add(pair[1])
        allcc.append(pair)
    if allcc:
        msg['Cc'] = patchhub.format_addrs(allcc)

    subject = re.sub(r'^Re:\s+', '', lmsg.subject, flags=re.I)
    msg['Subject'] = 'Re: ' + subject
    msg['In-Reply-To'] = '<%s>' % lmsg.msgid
    refs = list(lmsg.references)
    if lmsg.in_reply_to and lmsg.in_reply_to not in refs:
        refs.append(lmsg.in_reply_to)
    refs.append(lmsg.msgid)
    msg['References'] = ' '.join('<%s>' % x for x in refs)

    sentdate = lmsg.date.strftime('%a, %d %b %Y %H:%M:%S %z')
    body = 'On %s, %s wrote:\n%s\n\n%s: %s\n' % (sentdate, lmsg.from_name or lmsg.from_email,
                                                 quote_body(lmsg.body), kind, identity)
    msg.set_content(body, charset='utf-8', cte='8bit')
    return msg


def validate_reply(msg: email.message.EmailMessage, kind: str, identity: str) -> None:
    for header in ('From', 'To', 'Subject', 'In-Reply-To', 'References'):
        if not msg.get(header):
            raise ValueError('Reply is missing the %s header' % header)
    body = msg.get_content()
    if not re.search(r'^%s: %s$' % (re.escape(kind), re.escape(identity)), body, flags=re.M):
        raise ValueError('Reply does not carry the %s trailer' % kind)


def reply_patchset(patchset: Patchset, selected: Sequence[Message], kind: str, identity: Optional[str], *,
                   dryrun: bool, tool=None, reviewed=None) -> List[ActionOutcome]:
    """Reply to each selected message with a "<kind>: <identity>" trailer.

    Messages already carrying that exact trailer, in the thread or in the
    record of earlier replies, are skipped. With dryrun the reply is composed
    and validated the same way, and the sending tool is told not to send.
    """
    if kind not in TAG_KINDS:
        raise ValueError('Unknown tag kind: %s' % kind)
    if tool is None:
        tool = GitSendEmailTool()
    identity = (identity or '').strip()
    ledger = TagLedger(patchset)

    tool_error = None
    try:
        tool.check()
    except ExternalToolMissing as ex:
        tool_error = ex

    outcomes = list()
    for lmsg in selected:
        if identity and ledger.has_tag(lmsg.msgid, kind, identity):
            outcomes.append(_skipped(lmsg.msgid, ALREADY_TAGGED))
            continue
        if identity and reviewed is not None and reviewed.has_tag(patchset.message_id, lmsg.msgid, kind, identity):
            # Sent earlier, the archive may not have it yet
            outcomes.append(_skipped(lmsg.msgid, ALREADY_TAGGED))
            continue
        if not identity:
            outcomes.append(_failed(lmsg.msgid, ConfigError('No replier identity configured')))
            continue
        try:
            reply = compose_reply(lmsg, kind, identity)
            validate_reply(reply, kind, identity)
        except ValueError as ex:
            outcomes.append(_failed(lmsg.msgid, PatchHubError('Cannot reply to %s: %s' % (lmsg.msgid, ex))))
            continue
        if tool_error is not None:
            outcomes.append(_failed(lmsg.msgid, tool_error, message=reply, dryrun=dryrun))
            continue

        bdata = reply.as_bytes(policy=patchhub.emlpolicy)
        if dryrun:
            logger.info('    --- DRYRUN: message follows ---')
            logger.info('    | ' + bdata.decode(errors='replace').rstrip().replace('\n', '\n    | '))
            logger.info('    --- DRYRUN: message ends ---')
        try:
            tool.send(bdata, dryrun)
        except ExternalToolError as ex:
            outcomes.append(_failed(lmsg.msgid, ex, message=reply, dryrun=dryrun))
            continue
        except OSError as ex:
            outcomes.append(_failed(lmsg.msgid, ExternalToolFailed(tool.name, str(ex)), message=reply,
                                    dryrun=dryrun))
            continue

        detail = 'dry run' if dryrun else 'sent'
        outcomes.append(ActionOutcome(lmsg.msgid, OutcomeStatus.APPLIED, detail=detail, message=reply,
                                      dryrun=dryrun))
        if not dryrun and reviewed is not None:
            try:
                reviewed.record(patchset.message_id, lmsg.msgid, kind, identity)
            except CacheError as ex:
                logger.warning('%s', ex)

    return outcomes
