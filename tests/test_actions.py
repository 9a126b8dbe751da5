import pytest  # noqa
import patchhub
import patchhub.actions
import dataclasses
import datetime
import os
import shutil

from patchhub import TreeTarget, TargetRegistry, ExternalToolMissing, ExternalToolFailed
from patchhub.actions import OutcomeStatus, ApplyResult, ALREADY_TAGGED
from patchhub.bookmarks import ReviewedStore
from patchhub.model import Message, Patchset

IDENTITY = 'Test Override <test-override@example.com>'


class FakeAmTool:
    name = 'git-am'

    def __init__(self, failing=(), dirty=(), conflicts=(), missing=False):
        self.failing = failing
        self.dirty = dirty
        self.conflicts = conflicts
        self.missing = missing
        self.applied = list()

    def check(self):
        if self.missing:
            raise ExternalToolMissing('git')

    def preflight(self, target):
        if target.name in self.dirty:
            return 'working tree has uncommitted changes'
        return None

    def apply(self, target, patches):
        self.applied.append((target.name, list(patches)))
        if target.name in self.failing:
            raise ExternalToolFailed(self.name, 'does not apply', 128)
        if target.name in self.conflicts:
            return ApplyResult(1, len(patches), 'Patch failed at 0002', conflicts=True)
        return ApplyResult(len(patches), len(patches))


class FakeSendTool:
    name = 'git-send-email'

    def __init__(self, missing=False, failing=()):
        self.missing = missing
        self.failing = failing
        self.sent = list()

    def check(self):
        if self.missing:
            raise ExternalToolMissing(self.name)

    def send(self, bdata, dryrun):
        self.sent.append((bdata, dryrun))
        for msgid in self.failing:
            if msgid.encode() in bdata:
                raise ExternalToolFailed(self.name, 'SMTP server refused', 1)
        return ''


@pytest.fixture(scope="function")
def registry(tmp_path):
    return TargetRegistry({
        'alpha': {'path': str(tmp_path / 'alpha')},
        'beta': {'path': str(tmp_path / 'beta'), 'branch': 'next'},
    })


def make_message(counter, trailers=(), total=2):
    return Message(msgid='p%s@example.com' % counter, subject='[PATCH %s/%s] frob' % (counter, total),
                   from_name='Jane Developer', from_email='jane@example.com', to='list@example.org',
                   counter=counter, expected=total, has_diff=counter > 0,
                   body='Patch %s.\n\nSigned-off-by: Jane Developer <jane@example.com>\n' % counter,
                   raw=b'Subject: patch %d\n\nbody\n' % counter, trailers=tuple(trailers))


def make_patchset(*msgs):
    return Patchset(message_id=msgs[0].msgid, title='frob', version=1, total=len(msgs),
                    updated=datetime.datetime(2024, 5, 2, tzinfo=datetime.timezone.utc),
                    author='Jane Developer <jane@example.com>', list_name='list', messages=tuple(msgs))


def test_build_am_mbox():
    bmbox = patchhub.actions.build_am_mbox([b'Subject: one\n\nbody\n', b'Subject: two\n\nbody'])
    assert bmbox == (b'From git@z Thu Jan  1 00:00:00 1970\nSubject: one\n\nbody\n'
                     b'From git@z Thu Jan  1 00:00:00 1970\nSubject: two\n\nbody\n')


def test_apply_in_series_order(registry):
    p1, p2, p3 = make_message(1, total=3), make_message(2, total=3), make_message(3, total=3)
    patchset = make_patchset(p3, p1, p2)
    tool = FakeAmTool()
    outcomes = patchhub.actions.apply_patchset(patchset, ['alpha'], registry=registry, tool=tool)
    assert [x.status for x in outcomes] == [OutcomeStatus.APPLIED]
    assert tool.applied == [('alpha', [p1.raw, p2.raw, p3.raw])]


def test_apply_skips_cover(registry, patchset):
    tool = FakeAmTool()
    patchhub.actions.apply_patchset(patchset, ['alpha'], registry=registry, tool=tool)
    assert tool.applied == [('alpha', [x.raw for x in patchset.patches])]
    assert len(tool.applied[0][1]) == 2


def test_apply_continues_on_error(registry):
    patchset = make_patchset(make_message(1), make_message(2))
    tool = FakeAmTool(failing=('alpha',))
    outcomes = patchhub.actions.apply_patchset(patchset, ['alpha', 'beta'], registry=registry, tool=tool)
    assert [(x.subject, x.status) for x in outcomes] == [
        ('alpha', OutcomeStatus.FAILED),
        ('beta', OutcomeStatus.APPLIED),
    ]
    assert isinstance(outcomes[0].error, ExternalToolFailed)
    assert not outcomes[0].ok
    assert outcomes[1].ok
    assert [x[0] for x in tool.applied] == ['alpha', 'beta']


def test_apply_mixed_outcomes(registry):
    patchset = make_patchset(make_message(1), make_message(2))
    tool = FakeAmTool(dirty=('alpha',), conflicts=('beta',))
    outcomes = patchhub.actions.apply_patchset(patchset, ['nope', 'alpha', 'beta'], registry=registry, tool=tool)
    assert [(x.subject, x.status) for x in outcomes] == [
        ('nope', OutcomeStatus.FAILED),
        ('alpha', OutcomeStatus.SKIPPED),
        ('beta', OutcomeStatus.APPLIED_WITH_CONFLICTS),
    ]
    assert isinstance(outcomes[0].error, patchhub.TargetNotConfigured)
    assert outcomes[1].detail == 'working tree has uncommitted changes'
    assert 'stopped after 1 of 2 patches' in outcomes[2].detail
    assert [x[0] for x in tool.applied] == ['beta']


def test_apply_tool_missing(registry):
    patchset = make_patchset(make_message(1), make_message(2))
    tool = FakeAmTool(missing=True)
    outcomes = patchhub.actions.apply_patchset(patchset, ['alpha', 'beta'], registry=registry, tool=tool)
    assert all(x.status == OutcomeStatus.FAILED for x in outcomes)
    assert all(isinstance(x.error, ExternalToolMissing) for x in outcomes)
    assert tool.applied == list()


def test_quote_body():
    assert patchhub.actions.quote_body('one\n\ntwo\n') == '> one\n>\n> two'


def test_compose_reply(patchset):
    lmsg = patchset.get_message('20240502100000.4242-2-jane@example.com')
    reply = patchhub.actions.compose_reply(lmsg, 'Reviewed-by', IDENTITY)
    assert reply['From'] == IDENTITY
    assert reply['To'] == 'Jane Developer <jane@example.com>'
    assert reply['Cc'] == 'netdev@vger.kernel.org, Bob Maintainer <bob@example.org>'
    assert reply['Subject'] == 'Re: [PATCH v2 1/2] net: frob: add core'
    assert reply['In-Reply-To'] == '<20240502100000.4242-2-jane@example.com>'
    assert reply['References'] == ('<20240422090000.1000-1-jane@example.com> '
                                   '<20240502100000.4242-1-jane@example.com> '
                                   '<20240502100000.4242-2-jane@example.com>')
    assert reply['Date'] is None
    assert reply['Message-Id'] is None
    body = reply.get_content()
    assert body.startswith('On Thu, 02 May 2024 10:00:01 +0000, Jane Developer wrote:\n> Add the frobnicator core.\n')
    assert body.endswith('\n\nReviewed-by: %s\n' % IDENTITY)


@pytest.mark.parametrize('dryrun', [True, False])
def test_send_email_keeps_recipients(monkeypatch, patchset, dryrun):
    calls = list()

    def fake_git(gitdir, args, stdin=None, logstderr=False, decode=True):
        with open(args[-1], 'rb') as fh:
            calls.append((args, fh.read()))
        return 0, ''

    monkeypatch.setattr(patchhub, 'git_run_command', fake_git)
    lmsg = patchset.get_message('20240502100000.4242-2-jane@example.com')
    bdata = patchhub.actions.compose_reply(lmsg, 'Reviewed-by', IDENTITY).as_bytes(policy=patchhub.emlpolicy)
    patchhub.actions.GitSendEmailTool(options='--smtp-encryption=tls').send(bdata, dryrun)
    args, sent = calls[0]
    assert args[0] == 'send-email'
    assert '--suppress-cc=all' not in args
    assert '--suppress-cc=self' in args
    assert '--smtp-encryption=tls' in args
    assert ('--dry-run' in args) is dryrun
    assert b'Cc: netdev@vger.kernel.org' in sent


def test_reply_skips_already_tagged():
    p1 = make_message(1)
    p2 = make_message(2, trailers=[('Reviewed-by', 'alice@example.com')])
    patchset = make_patchset(p1, p2)
    tool = FakeSendTool()
    outcomes = patchhub.actions.reply_patchset(patchset, [p1, p2], 'Reviewed-by', 'alice@example.com',
                                               dryrun=True, tool=tool)
    assert outcomes[0].status == OutcomeStatus.APPLIED
    assert outcomes[0].message is not None
    assert outcomes[1].status == OutcomeStatus.SKIPPED
    assert outcomes[1].detail == ALREADY_TAGGED
    assert len(tool.sent) == 1


def test_reply_other_kind_not_skipped():
    p2 = make_message(2, trailers=[('Reviewed-by', 'alice@example.com')])
    patchset = make_patchset(make_message(1), p2)
    outcomes = patchhub.actions.reply_patchset(patchset, [p2], 'Acked-by', 'alice@example.com', dryrun=True,
                                               tool=FakeSendTool())
    assert outcomes[0].status == OutcomeStatus.APPLIED


def test_dry_run_composes_identical_message(patchset, tmp_path):
    selected = list(patchset.messages)
    reviewed = ReviewedStore(str(tmp_path / 'reviewed.json'))
    drytool = FakeSendTool()
    dry = patchhub.actions.reply_patchset(patchset, selected, 'Tested-by', IDENTITY, dryrun=True, tool=drytool,
                                          reviewed=reviewed)
    assert reviewed.get(patchset.message_id) == set()
    livetool = FakeSendTool()
    live = patchhub.actions.reply_patchset(patchset, selected, 'Tested-by', IDENTITY, dryrun=False,
                                           tool=livetool, reviewed=reviewed)
    assert [x[0] for x in drytool.sent] == [x[0] for x in livetool.sent]
    assert [x[1] for x in drytool.sent] == [True, True, True]
    assert [x[1] for x in livetool.sent] == [False, False, False]
    assert [x.detail for x in dry] == ['dry run'] * 3
    assert [x.detail for x in live] == ['sent'] * 3
    assert all(x.dryrun for x in dry)
    assert reviewed.get(patchset.message_id) == {x.msgid for x in selected}


def test_reply_continues_on_error(patchset):
    selected = list(patchset.patches)
    tool = FakeSendTool(failing=('20240502100000.4242-2-jane@example.com',))
    outcomes = patchhub.actions.reply_patchset(patchset, selected, 'Acked-by', IDENTITY, dryrun=False, tool=tool)
    assert [x.status for x in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.APPLIED]
    assert outcomes[0].message is not None


def test_reply_tool_missing(patchset):
    tool = FakeSendTool(missing=True)
    outcomes = patchhub.actions.reply_patchset(patchset, list(patchset.patches), 'Acked-by', IDENTITY,
                                               dryrun=True, tool=tool)
    assert all(isinstance(x.error, ExternalToolMissing) for x in outcomes)
    assert tool.sent == list()


def test_reply_needs_identity(patchset):
    outcomes = patchhub.actions.reply_patchset(patchset, list(patchset.patches), 'Acked-by', '  ', dryrun=True,
                                               tool=FakeSendTool())
    assert all(isinstance(x.error, patchhub.ConfigError) for x in outcomes)


def test_reply_unknown_kind(patchset):
    with pytest.raises(ValueError):
        patchhub.actions.reply_patchset(patchset, list(patchset.patches), 'Signed-off-by', IDENTITY, dryrun=True,
                                        tool=FakeSendTool())


@pytest.fixture(scope="function")
def gitrepo(tmp_path):
    repo = str(tmp_path / 'repo')
    os.makedirs(os.path.join(repo, 'net'))
    patchhub.git_run_command(None, ['init', '-q', repo])
    patchhub.git_run_command(repo, ['config', 'user.name', 'Test Committer'])
    patchhub.git_run_command(repo, ['config', 'user.email', 'committer@example.com'])
    with open(os.path.join(repo, 'net', 'frob.c'), 'w') as fh:
        fh.write('int frob;\n')
    patchhub.git_run_command(repo, ['add', 'net/frob.c'])
    patchhub.git_run_command(repo, ['commit', '-q', '-m', 'Initial commit'])
    return repo


@pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')
def test_git_am_applies_series(gitrepo, patchset):
    registry = TargetRegistry({'repo': {'path': gitrepo}})
    outcomes = patchhub.actions.apply_patchset(patchset, ['repo'], registry=registry,
                                               tool=patchhub.actions.GitAmTool(amflags=''))
    assert outcomes[0].status == OutcomeStatus.APPLIED
    subjects = patchhub.git_get_command_lines(gitrepo, ['log', '--format=%s', '-2'])
    assert subjects == ['net: frob: add statistics', 'net: frob: add core']


@pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')
def test_git_am_dirty_tree(gitrepo, patchset):
    with open(os.path.join(gitrepo, 'net', 'frob.c'), 'a') as fh:
        fh.write('int local_change;\n')
    target = TreeTarget('repo', gitrepo)
    outcome = patchhub.actions.apply_to_target(target, [x.raw for x in patchset.patches],
                                               patchhub.actions.GitAmTool(amflags=''))
    assert outcome.status == OutcomeStatus.SKIPPED


@pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')
def test_git_am_conflicts(gitrepo, patchset):
    with open(os.path.join(gitrepo, 'net', 'frob.c'), 'w') as fh:
        fh.write('int something_else;\n')
    patchhub.git_run_command(gitrepo, ['commit', '-q', '-a', '-m', 'Diverge'])
    target = TreeTarget('repo', gitrepo)
    outcome = patchhub.actions.apply_to_target(target, [x.raw for x in patchset.patches],
                                               patchhub.actions.GitAmTool(amflags=''))
    assert outcome.status == OutcomeStatus.APPLIED_WITH_CONFLICTS
    assert 'stopped after 0 of 2 patches' in outcome.detail


def test_git_am_not_a_tree(tmp_path, patchset):
    target = TreeTarget('missing', str(tmp_path / 'missing'))
    outcome = patchhub.actions.apply_to_target(target, [x.raw for x in patchset.patches],
                                               patchhub.actions.GitAmTool(amflags=''))
    assert outcome.status == OutcomeStatus.FAILED
    assert 'no such directory' in outcome.detail


def test_outcome_str():
    outcome = patchhub.actions.ActionOutcome('alpha', OutcomeStatus.SKIPPED, detail='dirty')
    assert str(outcome) == 'alpha: skipped (dirty)'
    assert str(dataclasses.replace(outcome, detail='')) == 'alpha: skipped'
