#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse
import logging
import json
import time
import sys

import patchhub

logger = patchhub.logger


def _get_session():
    import patchhub.session
    session = patchhub.session.open_session()
    if session is None:
        sys.exit(1)
    return session


def _get_patchset(session, cmdargs):
    try:
        return session.patchset(cmdargs.msgid, list_name=cmdargs.listname or '', refresh=cmdargs.refresh)
    except patchhub.PatchHubError as ex:
        logger.critical('Could not retrieve %s: %s', cmdargs.msgid, ex)
        sys.exit(1)


def _report(outcomes) -> None:
    for outcome in outcomes:
        if outcome.ok:
            logger.info('  %s', outcome)
        else:
            logger.critical('  %s', outcome)


def cmd_lists(cmdargs):
    with _get_session() as session:
        try:
            lists = session.available_lists(cmdargs.prefix or '', cmdargs.limit, refresh=cmdargs.refresh)
        except patchhub.PatchHubError as ex:
            logger.critical('Could not retrieve mailing lists: %s', ex)
            sys.exit(1)
    if not lists:
        logger.info('No matching lists found')
        return
    width = max(len(x.name) for x in lists)
    for mlist in lists:
        logger.info('%s  %s', mlist.name.ljust(width), mlist.description)


def cmd_feed(cmdargs):
    with _get_session() as session:
        try:
            page = session.get_feed_page(cmdargs.listname, cmdargs.pagesize, cmdargs.page, refresh=cmdargs.refresh)
        except patchhub.PatchHubError as ex:
            logger.critical('Could not retrieve patch feed for %s: %s', cmdargs.listname, ex)
            sys.exit(1)
        if page is None:
            logger.info('No patchsets on page %s of %s', cmdargs.page, cmdargs.listname)
            return
        for summary in page:
            mark = '*' if session.is_bookmarked(summary.message_id) else ' '
            logger.info('%s %s v%s %s (%s)', mark, summary.updated.strftime('%Y-%m-%d'), summary.version,
                        summary.title, summary.author_name or summary.author_email)
            logger.debug('    %s', summary.message_id)


def _show_patchset(session, patchset) -> None:
    import patchhub.model
    logger.info('%s', patchset.title)
    logger.info('  Version: v%s, %s patches', patchset.version, patchset.total)
    logger.info('  Author: %s', patchset.author)
    logger.info('  Updated: %s', patchset.updated.strftime('%Y-%m-%d %H:%M'))
    if session.is_bookmarked(patchset.message_id):
        logger.info('  Bookmarked')
    ledger = patchhub.model.TagLedger(patchset)
    reviewed = set(session.reviewed_messages(patchset.message_id))
    for lmsg in patchset.messages:
        mark = '+' if lmsg.msgid in reviewed else ' '
        logger.info('%s [%s/%s] %s', mark, lmsg.counter, patchset.total, lmsg.subject)
        for kind, identity in sorted(ledger.per_message.get(lmsg.msgid, set())):
            logger.info('      %s: %s', kind, identity)


def cmd_show(cmdargs):
    with _get_session() as session:
        if len(cmdargs.msgids) == 1:
            cmdargs.msgid = cmdargs.msgids[0]
            _show_patchset(session, _get_patchset(session, cmdargs))
            return
        results = session.patchsets(cmdargs.msgids, list_name=cmdargs.listname or '')
        failed = False
        for msgid in cmdargs.msgids:
            completion = results[msgid]
            if not completion.ok:
                logger.critical('Could not retrieve %s: %s', msgid, completion.error)
                failed = True
                continue
            _show_patchset(session, completion.result)
            logger.info('---')
    if failed:
        sys.exit(1)


def cmd_bookmark(cmdargs):
    with _get_session() as session:
        try:
            if cmdargs.bmcmd == 'add':
                for msgid in cmdargs.msgids:
                    session.bookmark(msgid)
                    logger.info('Bookmarked %s', msgid)
            elif cmdargs.bmcmd == 'remove':
                for msgid in cmdargs.msgids:
                    session.unbookmark(msgid)
                    logger.info('Removed bookmark %s', msgid)
            else:
                for msgid in sorted(session.bookmarks.list()):
                    logger.info('%s', msgid)
        except patchhub.CacheError as ex:
            logger.critical('%s', ex)
            sys.exit(1)


def cmd_apply(cmdargs):
    registry = patchhub.get_targets()
    if cmdargs.alltargets:
        targets = [x.name for x in registry.all()]
    else:
        targets = cmdargs.targets or list()
    if not targets:
        logger.critical('No target trees selected, use -t NAME or --all-targets')
        sys.exit(1)

    with _get_session() as session:
        patchset = _get_patchset(session, cmdargs)
        logger.info('Applying: %s (v%s, %s patches)', patchset.title, patchset.version, len(patchset.patches))
        outcomes = session.apply(patchset, targets)
    _report(outcomes)


def cmd_reply(cmdargs):
    with _get_session() as session:
        patchset = _get_patchset(session, cmdargs)
        if cmdargs.msgrange:
            counters = list(patchhub.parse_int_range(cmdargs.msgrange, upper=patchset.total))
        else:
            counters = [x.counter for x in patchset.messages]
        try:
            outcomes = session.reply(patchset, counters, cmdargs.kind, cmdargs.identity, dryrun=cmdargs.dryrun)
        except IndexError as ex:
            logger.critical('%s', ex)
            sys.exit(1)
    if cmdargs.dryrun:
        logger.info('DRYRUN: nothing was sent, use --no-dry-run to send')
    _report(outcomes)


def cmd_gc(cmdargs):
    import patchhub.cache
    policy = patchhub.cache.GCPolicy.from_config()
    if cmdargs.maxentries is not None:
        policy = patchhub.cache.GCPolicy(max_entries=cmdargs.maxentries, max_age=policy.max_age)
    if cmdargs.maxage is not None:
        policy = patchhub.cache.GCPolicy(max_entries=policy.max_entries, max_age=cmdargs.maxage * 60)
    with _get_session() as session:
        try:
            removed = session.gc(policy)
            count, oldest = session.cache.stats()
            if oldest is not None:
                logger.debug('Oldest entry retrieved at %s', time.strftime('%Y-%m-%d %H:%M', time.localtime(oldest)))
        except patchhub.CacheError as ex:
            logger.critical('%s', ex)
            sys.exit(1)
    logger.info('Removed %s entries, %s left in %s', len(removed), count, session.cache.cachedir)


def show_configs():
    config = dict(patchhub.get_main_config())
    config['targets'] = {x.name: x.as_dict() for x in patchhub.get_targets().all()}
    config['replier'] = patchhub.get_replier_identity()
    json.dump(config, sys.stdout, indent=2, sort_keys=True)
    sys.stdout.write('\n')


def setup_parser() -> argparse.ArgumentParser:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        prog='patchhub',
        description='Browse, apply and review patchsets from public-inbox archives',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=patchhub.__VERSION__)
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Add more debugging info to the output')
    parser.add_argument('-q', '--quiet', action='store_true', default=False,
                        help='Output critical information only')
    parser.add_argument('--show-configs', dest='showconfigs', action='store_true', default=False,
                        help='Print the resolved configuration as JSON and exit')

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    # patchhub lists
    sp_lists = subparsers.add_parser('lists', help='Show mailing lists available in the archive')
    sp_lists.add_argument('prefix', nargs='?', default='',
                          help='Only show lists starting with this prefix')
    sp_lists.add_argument('-l', '--limit', type=int, default=0,
                          help='How many lists to show without a prefix (default: patchhub.lists-limit)')
    sp_lists.add_argument('-r', '--refresh', action='store_true', default=False,
                          help='Ignore the cached list index')
    sp_lists.set_defaults(func=cmd_lists)

    # patchhub feed
    sp_feed = subparsers.add_parser('feed', help='Show latest patchsets sent to a mailing list')
    sp_feed.add_argument('listname', help='Mailing list to show')
    sp_feed.add_argument('-p', '--page', type=int, default=1,
                         help='Page number to show, starting at 1')
    sp_feed.add_argument('-s', '--page-size', dest='pagesize', type=int, default=30,
                         help='Number of patchsets per page')
    sp_feed.add_argument('-r', '--refresh', action='store_true', default=False,
                         help='Fetch the feed again instead of using the cache')
    sp_feed.set_defaults(func=cmd_feed)

    # patchhub show
    sp_show = subparsers.add_parser('show', help='Show a patchset and the tags it received')
    sp_show.add_argument('msgids', nargs='+', metavar='msgid', help='Message-id of the patchset')
    sp_show.add_argument('-l', '--list', dest='listname', default=None,
                         help='Mailing list the patchset was sent to')
    sp_show.add_argument('-r', '--refresh', action='store_true', default=False,
                         help='Refetch the thread instead of using the cache')
    sp_show.set_defaults(func=cmd_show)

    # patchhub bookmark
    sp_bm = subparsers.add_parser('bookmark', help='Manage bookmarked patchsets')
    bm_sub = sp_bm.add_subparsers(dest='bmcmd')
    bm_sub.required = True
    sp_bma = bm_sub.add_parser('add', help='Bookmark patchsets')
    sp_bma.add_argument('msgids', nargs='+', metavar='msgid')
    sp_bmr = bm_sub.add_parser('remove', help='Remove bookmarks')
    sp_bmr.add_argument('msgids', nargs='+', metavar='msgid')
    bm_sub.add_parser('list', help='List bookmarked patchsets')
    sp_bm.set_defaults(func=cmd_bookmark)

    # patchhub apply
    sp_apply = subparsers.add_parser('apply', help='Apply a patchset to configured target trees')
    sp_apply.add_argument('msgid', help='Message-id of the patchset')
    sp_apply.add_argument('-l', '--list', dest='listname', default=None,
                          help='Mailing list the patchset was sent to')
    sp_apply.add_argument('-r', '--refresh', action='store_true', default=False,
                          help='Refetch the thread instead of using the cache')
    ap_g = sp_apply.add_mutually_exclusive_group()
    ap_g.add_argument('-t', '--target', dest='targets', action='append', metavar='NAME',
                      help='Apply to this target tree (can be used multiple times)')
    ap_g.add_argument('--all-targets', dest='alltargets', action='store_true', default=False,
                      help='Apply to every configured target tree')
    sp_apply.set_defaults(func=cmd_apply)

    # patchhub reply
    sp_reply = subparsers.add_parser('reply', help='Reply to patchset messages with a review tag')
    sp_reply.add_argument('msgid', help='Message-id of the patchset')
    sp_reply.add_argument('-l', '--list', dest='listname', default=None,
                          help='Mailing list the patchset was sent to')
    sp_reply.add_argument('-r', '--refresh', action='store_true', default=False,
                          help='Refetch the thread instead of using the cache')
    sp_reply.add_argument('-k', '--kind', default='Reviewed-by', choices=['Reviewed-by', 'Acked-by', 'Tested-by'],
                          help='Tag to add to the replies')
    sp_reply.add_argument('-P', '--pick', dest='msgrange', default=None,
                          help='Reply only to these messages, 0 being the cover letter (e.g. "-P 0,2-4")')
    sp_reply.add_argument('-i', '--identity', default=None,
                          help='Identity for the tag (default: patchhub.replier or git user.name/user.email)')
    sp_reply.add_argument('--no-dry-run', dest='dryrun', action='store_false', default=True,
                          help='Actually send the replies instead of only showing them')
    sp_reply.set_defaults(func=cmd_reply)

    # patchhub gc
    sp_gc = subparsers.add_parser('gc', help='Remove old entries from the local cache')
    sp_gc.add_argument('--max-entries', dest='maxentries', type=int, default=None,
                       help='Keep at most this many entries (default: patchhub.cache-max-entries)')
    sp_gc.add_argument('--max-age', dest='maxage', type=int, default=None,
                       help='Remove entries older than this many minutes (default: patchhub.cache-expire)')
    sp_gc.set_defaults(func=cmd_gc)

    return parser


def cmd():
    parser = setup_parser()
    cmdargs = parser.parse_args()
    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if cmdargs.quiet:
        ch.setLevel(logging.CRITICAL)
    elif cmdargs.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.INFO)

    logger.addHandler(ch)

    if cmdargs.showconfigs:
        show_configs()
        sys.exit(0)

    if 'func' not in cmdargs:
        parser.print_help()
        sys.exit(1)

    try:
        cmdargs.func(cmdargs)
    except KeyboardInterrupt:
        logger.info('Exiting on user request')
        sys.exit(0)


if __name__ == '__main__':
    cmd()
