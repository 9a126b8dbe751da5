# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import subprocess
import logging
import re
import os
import copy
import shutil
import pathlib
import email.utils
import email.policy
import email.header
import email.message
# noinspection PyCompatibility
import pwd

from typing import Optional, Tuple, List, Union, Dict

from email import charset
charset.add_charset('utf-8', None)
# Policy we use for saving mail locally
emlpolicy = email.policy.EmailPolicy(utf8=True, cte_type='8bit', max_line_length=None)

__VERSION__ = '0.2.0'

logger = logging.getLogger('patchhub')

LOREADDR = 'https://lore.kernel.org'

DEFAULT_CONFIG = {
    'lore-base': LOREADDR,
    # Seconds to wait for the archive to respond
    'fetch-timeout': '30',
    # Total attempts for a single idempotent request
    'fetch-retries': '3',
    # Cache bounds, enforced by explicit gc runs only
    'cache-max-entries': '1000',
    # How long to keep things in cache before expiring (minutes)?
    'cache-expire': '4320',
    # Passed to git-am when applying a series
    'am-flags': '--3way',
    # Passed to git-send-email when dispatching replies
    'send-email-options': '',
    # Identity used in reply trailers; falls back to git user.name/user.email
    'replier': None,
    # How many lists to show when no prefix is given
    'lists-limit': '50',
}

# This is where we store actual config
MAIN_CONFIG = None
# This is git-config user.*
USER_CONFIG = None
# This is git-config patchhub-target.*
TARGETS = None


class PatchHubError(Exception):
    pass


class TransportError(PatchHubError):
    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ProtocolError(PatchHubError):
    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class CacheError(PatchHubError):
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ConfigError(PatchHubError):
    pass


class TargetNotConfigured(ConfigError):
    def __init__(self, name: str):
        super().__init__('Target tree "%s" is not configured' % name)
        self.name = name


class ExternalToolError(PatchHubError):
    def __init__(self, message: str, tool: str):
        super().__init__(message)
        self.tool = tool


class ExternalToolMissing(ExternalToolError):
    def __init__(self, tool: str):
        super().__init__('Required tool not found: %s' % tool, tool)


class ExternalToolFailed(ExternalToolError):
    def __init__(self, tool: str, detail: str, ecode: Optional[int] = None):
        super().__init__('%s failed: %s' % (tool, detail), tool)
        self.detail = detail
        self.ecode = ecode


class TreeTarget:
    name: str
    path: str
    branch: Optional[str]

    def __init__(self, name: str, path: str, branch: Optional[str] = None):
        self.name = name
        self.path = os.path.expanduser(os.path.expandvars(path))
        self.branch = branch or None

    def as_dict(self) -> dict:
        return {'path': self.path, 'branch': self.branch}

    def __eq__(self, other):
        if not isinstance(other, TreeTarget):
            return NotImplemented
        return (self.name, self.path, self.branch) == (other.name, other.path, other.branch)

    def __repr__(self):
        if self.branch:
            return '%s: %s (%s)' % (self.name, self.path, self.branch)
        return '%s: %s' % (self.name, self.path)


class TargetRegistry:
    """Named target trees, read-only to everything except configuration loading."""

    def __init__(self, targets: Optional[Dict[str, dict]] = None):
        self._targets = dict()
        if targets:
            for name, tcfg in targets.items():
                if not tcfg.get('path'):
                    logger.debug('Ignoring target %s without a path', name)
                    continue
                self._targets[name] = TreeTarget(name, tcfg['path'], tcfg.get('branch'))

    def get(self, name: str) -> TreeTarget:
        try:
            return self._targets[name]
        except KeyError:
            raise TargetNotConfigured(name)

    def all(self) -> List[TreeTarget]:
        return [self._targets[name] for name in sorted(self._targets)]

    def __contains__(self, name: str) -> bool:
        return name in self._targets

    def __len__(self) -> int:
        return len(self._targets)


def _run_command(cmdargs: List[str], stdin: Optional[bytes] = None,
                 rundir: Optional[str] = None) -> Tuple[int, bytes, bytes]:
    logger.debug('Running %s' % ' '.join(cmdargs))
    if rundir:
        logger.debug('  in %s', rundir)
    sp = subprocess.Popen(cmdargs, stdout=subprocess.PIPE, stdin=subprocess.PIPE, stderr=subprocess.PIPE,
                          cwd=rundir)
    (output, error) = sp.communicate(input=stdin)

    return sp.returncode, output, error


def git_run_command(gitdir: Optional[str], args: List[str], stdin: Optional[bytes] = None,
                    logstderr: bool = False, decode: bool = True) -> Tuple[int, Union[str, bytes]]:
    cmdargs = ['git', '--no-pager']
    if gitdir:
        cmdargs += ['-C', gitdir]

    cmdargs += args

    ecode, out, err = _run_command(cmdargs, stdin=stdin)

    if decode:
        out = out.decode(errors='replace')

    if logstderr and len(err.strip()):
        if decode:
            err = err.decode(errors='replace')
        logger.debug('Stderr: %s', err)
        out += err

    return ecode, out


def git_get_command_lines(gitdir: Optional[str], args: list) -> List[str]:
    ecode, out = git_run_command(gitdir, args)
    lines = list()
    if out:
        for line in out.split('\n'):
            if line == '':
                continue
            lines.append(line)

    return lines


def git_get_repo_status(gitdir: Optional[str] = None, untracked: bool = False) -> List[str]:
    args = ['status', '--porcelain=v1']
    if not untracked:
        args.append('--untracked-files=no')
    return git_get_command_lines(gitdir, args)


def git_get_current_branch(gitdir: Optional[str] = None, short: bool = True) -> Optional[str]:
    gitargs = ['symbolic-ref', '-q', 'HEAD']
    ecode, out = git_run_command(gitdir, gitargs)
    if ecode > 0:
        logger.debug('Not able to get current branch (git symbolic-ref HEAD)')
        return None
    mybranch = out.strip()
    if short:
        return re.sub(r'^refs/heads/', '', mybranch)
    return mybranch


def which(tool: str) -> Optional[str]:
    return shutil.which(tool)


def get_config_from_git(regexp: str, defaults: Optional[dict] = None,
                        multivals: Optional[list] = None, source: Optional[str] = None) -> dict:
    if multivals is None:
        multivals = list()
    args = ['config']
    if source:
        args += ['--file', source]
    args += ['-z', '--get-regexp', regexp]
    ecode, out = git_run_command(None, args)
    gitconfig = defaults
    if not gitconfig:
        gitconfig = dict()
    if not out:
        return gitconfig

    for line in out.split('\x00'):
        if not line:
            continue
        key, value = line.split('\n', 1)
        try:
            chunks = key.split('.')
            cfgkey = chunks[-1].lower()
            if cfgkey in multivals:
                if cfgkey not in gitconfig:
                    gitconfig[cfgkey] = list()
                gitconfig[cfgkey].append(value)
            else:
                gitconfig[cfgkey] = value
        except ValueError:
            logger.debug('Ignoring git config entry %s', line)

    return gitconfig


def get_targets_from_git(source: Optional[str] = None) -> Dict[str, dict]:
    args = ['config']
    if source:
        args += ['--file', source]
    args += ['-z', '--get-regexp', r'^patchhub-target\..*']
    ecode, out = git_run_command(None, args)
    targets = dict()
    if not out:
        return targets

    for line in out.split('\x00'):
        if not line or '\n' not in line:
            continue
        key, value = line.split('\n', 1)
        chunks = key.split('.')
        if len(chunks) < 3:
            logger.debug('Ignoring target entry without a name: %s', key)
            continue
        # Subsection names are case-sensitive and may contain dots
        name = '.'.join(chunks[1:-1])
        targets.setdefault(name, dict())[chunks[-1].lower()] = value

    return targets


def get_main_config() -> dict:
    global MAIN_CONFIG
    if MAIN_CONFIG is None:
        defcfg = copy.deepcopy(DEFAULT_CONFIG)
        config = get_config_from_git(r'patchhub\..*', defaults=defcfg)
        config['lore-base'] = config['lore-base'].rstrip('/')
        MAIN_CONFIG = config

    return MAIN_CONFIG


def get_config_int(key: str, fallback: int) -> int:
    config = get_main_config()
    try:
        return int(config.get(key, fallback))
    except (TypeError, ValueError):
        logger.critical('ERROR: patchhub.%s must be an integer: %s', key, config.get(key))
        return fallback


def get_user_config():
    global USER_CONFIG
    if USER_CONFIG is None:
        USER_CONFIG = get_config_from_git(r'user\..*')
        if 'name' not in USER_CONFIG:
            udata = pwd.getpwuid(os.getuid())
            USER_CONFIG['name'] = udata.pw_gecos
    return USER_CONFIG


def get_targets() -> TargetRegistry:
    global TARGETS
    if TARGETS is None:
        TARGETS = TargetRegistry(get_targets_from_git())
    return TARGETS


def get_replier_identity() -> Optional[str]:
    config = get_main_config()
    if config.get('replier'):
        return config['replier'].strip()
    usercfg = get_user_config()
    if not usercfg.get('email'):
        return None
    return '%s <%s>' % (usercfg.get('name', '').strip(), usercfg['email'])


def get_data_dir(appname: str = 'patchhub') -> str:
    if 'XDG_DATA_HOME' in os.environ:
        datahome = os.environ['XDG_DATA_HOME']
    else:
        datahome = os.path.join(str(pathlib.Path.home()), '.local', 'share')
    datadir = os.path.join(datahome, appname)
    pathlib.Path(datadir).mkdir(parents=True, exist_ok=True)
    return datadir


def get_cache_dir(appname: str = 'patchhub') -> str:
    if 'XDG_CACHE_HOME' in os.environ:
        cachehome = os.environ['XDG_CACHE_HOME']
    else:
        cachehome = os.path.join(str(pathlib.Path.home()), '.cache')
    cachedir = os.path.join(cachehome, appname)
    pathlib.Path(cachedir).mkdir(parents=True, exist_ok=True)
    return cachedir


def clean_header(hdrval: Optional[str]) -> str:
    if hdrval is None:
        return ''

    if hdrval.find('=?') >= 0:
        decoded = ''
        for hstr, hcs in email.header.decode_header(hdrval):
            if hcs is None:
                hcs = 'utf-8'
            try:
                decoded += hstr.decode(hcs, errors='replace')
            except LookupError:
                # Try as utf-8
                decoded += hstr.decode('utf-8', errors='replace')
            except (UnicodeDecodeError, AttributeError):
                decoded += hstr
    else:
        decoded = hdrval

    new_hdrval = re.sub(r'\n?\s+', ' ', decoded)
    return new_hdrval.strip()


def get_clean_msgid(msg: email.message.Message, header: str = 'Message-Id') -> Optional[str]:
    msgid = None
    raw = msg.get(header)
    if raw:
        matches = re.search(r'<([^>]+)>', clean_header(str(raw)))
        if matches:
            msgid = matches.groups()[0].strip()
    return msgid


def format_addrs(pairs, clean=True):
    addrs = list()
    for pair in pairs:
        if pair[0] == pair[1]:
            addrs.append(pair[1])
            continue
        if clean:
            # Remove any quoted-printable header junk from the name
            pair = (clean_header(pair[0]), pair[1])
        addrs.append(email.utils.formataddr(pair))
    return ', '.join(addrs)


def parse_int_range(intrange: str, upper: Optional[int] = None):
    # Remove all whitespace
    intrange = re.sub(r'\s', '', intrange)
    for n in intrange.split(','):
        if n.isdigit():
            yield int(n)
        elif n.find('<') == 0 and len(n) > 1 and n[1:].isdigit():
            yield from range(1, int(n[1:]))
        elif n.find('-') > 0:
            nr = n.split('-')
            if nr[0].isdigit() and nr[1].isdigit():
                yield from range(int(nr[0]), int(nr[1])+1)
            elif not len(nr[1]) and nr[0].isdigit() and upper:
                yield from range(int(nr[0]), upper+1)
        else:
            logger.critical('Unknown range value specified: %s', n)
