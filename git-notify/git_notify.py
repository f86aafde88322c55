#! /usr/bin/env python3

# Copyright (c) 2013 The git-notify authors
#
# This file is part of git-notify.
#
# git-notify is free software: you can redistribute it and/or
# modify it under the terms of the GNU General Public License version
# 2 as published by the Free Software Foundation.
#
# This program is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see
# <http://www.gnu.org/licenses/>.

"""Send commit notices for pushes to a git repository.

This hook describes the commits introduced by a push.  For each
reference that was updated, it sends one mail per new commit to a
mailing list and, optionally, one XML change report per new commit to
a CIA-style feed listener.  A newly created reference gets a single
mail describing its tip (a tag or a commit).  If a push introduces
more commits than a configured ceiling, a single summary mail listing
them replaces the individual notices.

This script is designed to be used as a "post-receive" hook in a git
repository (see githooks(5)), reading "OLDREV NEWREV REFNAME" lines
from its standard input.  It can also be run by hand with a single
OLDREV NEWREV REFNAME triple on the command line.

To help with debugging, this script accepts a --stdout option, which
causes the notices to be written to standard output rather than sent
using sendmail.

Settings are read from the "notify" section of the git configuration;
command-line options take precedence over them.

"""

import sys
import os
import re
import time
import shlex
import subprocess
import optparse
import collections
from email.header import Header


__version__ = '1.0.0'

ZEROS = '0' * 40

ENCODING = 'UTF-8'
CHARSET = 'utf-8'

# The "git" program (this could be changed to include a full path):
GIT_EXECUTABLE = 'git'

SHA1_RE = re.compile(r'^[0-9a-f]{40}$')

HEADS_PREFIX = 'refs/heads/'

# Log messages end where a detached signature begins:
SIGNATURE_MARKER = '-----BEGIN PGP SIGNATURE-----'

CIA_ADDRESS = 'cia@cia.navi.cx'
CIA_GENERATOR = 'git-notify script for CIA'


TAG_NOTICE_TEMPLATE = """\
Module: %(repos_name)s
Branch: %(ref)s
Tag:    %(sha1)s
URL:    %(tag_url)s
Tagger: %(tagger)s
Date:   %(date)s

"""


COMMIT_NOTICE_TEMPLATE = """\
Module: %(repos_name)s
Branch: %(ref)s
Commit: %(sha1)s
URL:    %(commit_url)s
Author: %(author)s
Date:   %(date)s

"""


DIFF_LINK_TEMPLATE = """\
Diff:   %(diff_url)s
"""


CIA_HEADER_TEMPLATE = """\
<message>
  <generator>
    <name>%(generator)s</name>
  </generator>
  <source>
    <project>%(project)s</project>
    <module>%(module)s</module>
    <branch>%(branch)s</branch>
  </source>
  <body>
    <commit>
      <revision>%(revision)s</revision>
      <author>%(author)s</author>
      <log>%(log)s</log>
      <files>
"""


CIA_FOOTER_TEMPLATE = """\
      </files>
      <url>%(url)s</url>
    </commit>
  </body>
  <timestamp>%(timestamp)s</timestamp>
</message>
"""


class CommandError(Exception):
    def __init__(self, cmd, retcode):
        self.cmd = cmd
        self.retcode = retcode
        Exception.__init__(
            self,
            'Command "%s" failed with retcode %s' % (' '.join(cmd), retcode,)
            )


class ConfigurationException(Exception):
    pass


class IntegrityError(Exception):
    """git produced output that violates its own format."""

    pass


def read_output(cmd, keepends=False, errors='replace', **kw):
    p = subprocess.Popen(
        cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, **kw
        )
    (out, err) = p.communicate()
    retcode = p.wait()
    if retcode:
        raise CommandError(cmd, retcode)
    out = out.decode(ENCODING, errors)
    if not keepends:
        out = out.rstrip('\n\r')
    return out


def read_git_output(args, keepends=False, **kw):
    """Read the output of a Git command."""

    return read_output([GIT_EXECUTABLE] + args, keepends=keepends, **kw)


def split_lines(text, keepends=False):
    """Split text at newline characters only.

    Unlike str.splitlines(), form feeds and other Unicode line
    boundaries stay inside the line."""

    lines = text.split('\n')
    last = lines.pop()
    if keepends:
        lines = ['%s\n' % (line,) for line in lines]
    if last:
        lines.append(last)
    return lines


def read_git_lines(args, keepends=False, **kw):
    """Return the lines output by Git command.

    Return as single lines, with newlines stripped off."""

    return split_lines(read_git_output(args, keepends=True, **kw), keepends)


def encode_raw(text):
    """Encode text to bytes, restoring any bytes kept as surrogate escapes."""

    return text.encode(ENCODING, 'surrogateescape')


def header_encode(text, header_name=None):
    """Encode and line-wrap the value of an email header field."""

    try:
        return Header(text, header_name=header_name).encode()
    except UnicodeEncodeError:
        return Header(text, header_name=header_name, charset=CHARSET,
                      errors='replace').encode()


def xml_escape(text):
    """Escape text for the XML feed.

    Besides the markup characters, every character outside of ASCII is
    written as a numeric character reference, so the payload does not
    depend on any particular encoding."""

    text = text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
    return ''.join(
        c if ord(c) <= 127 else '&#%d;' % (ord(c),)
        for c in text
        )


def format_date(timestamp, tz):
    """Format a git timestamp in the time zone it was recorded in.

    timestamp is a Unix time and tz the offset as a signed HHMM integer
    (e.g., -500 for "-0500").  The result looks like
    "Sat Sep  8 20:46:40 2001 -0500"."""

    offset = abs(tz)
    minutes = (offset // 100) * 60 + offset % 100
    if tz < 0:
        minutes = -minutes
    return '%s %+05d' % (time.asctime(time.gmtime(timestamp + minutes * 60)), tz)


def revision_spec(oldrev, newrev, exclude_refs=()):
    """Return the rev-list arguments for commits in newrev but not oldrev.

    Each entry of exclude_refs hides the history reachable from it."""

    return ['^%s' % (oldrev,), newrev] + ['^%s' % (ref,) for ref in exclude_refs]


class Config(object):
    def __init__(self, section, git_config=None):
        """Represent a section of the git configuration.

        If git_config is specified, "git config" reads the specified
        file rather than the Git default config paths."""

        self.section = section
        if git_config:
            self.command = ['config', '--file', git_config]
        else:
            self.command = ['config']

    @staticmethod
    def _split(s):
        """Split NUL-terminated values."""

        words = s.split('\0')
        assert words[-1] == ''
        return words[:-1]

    def get(self, name, default=None):
        try:
            values = self._split(read_git_output(
                self.command + ['--get', '--null', '%s.%s' % (self.section, name)],
                keepends=True,
                ))
            assert len(values) == 1
            return values[0]
        except CommandError:
            return default

    def get_bool(self, name, default=None):
        try:
            value = read_git_output(
                self.command + ['--get', '--bool', '%s.%s' % (self.section, name)],
                )
        except CommandError:
            return default
        return value == 'true'

    def get_all(self, name, default=None):
        """Read a (possibly multivalued) setting from the configuration.

        Return the result as a list of values, or default if the name
        is unset."""

        try:
            return self._split(read_git_output(
                self.command + ['--get-all', '--null', '%s.%s' % (self.section, name)],
                keepends=True,
                ))
        except CommandError as e:
            if e.retcode == 1:
                # "the section or key is invalid"; i.e., there is no
                # value for the specified key.
                return default
            else:
                raise

    def get_list(self, name, default=None):
        """Read a whitespace-separated list of words.

        Multiple values of the setting are concatenated.  Return
        default if the name is unset."""

        lines = self.get_all(name, default=None)
        if lines is None:
            return default
        return [word for line in lines for word in line.split()]


class GitBackend(object):
    """The repository queries needed to describe a push.

    All of the information about commits, tags and diffs is read
    through an instance of this class, so another store can be
    substituted by implementing the same methods."""

    SUMMARY_FORMAT = '%an: %s'

    def __init__(self, env=None):
        self.env = env

    def _read(self, args, **kw):
        return read_git_output(args, env=self.env, **kw)

    def _lines(self, args, **kw):
        return read_git_lines(args, env=self.env, **kw)

    def get_git_dir(self):
        return self._read(['rev-parse', '--git-dir'])

    def get_object_type(self, sha1):
        return self._read(['cat-file', '-t', sha1])

    def get_object_contents(self, type, sha1):
        """Return the lines of the object, without line endings."""

        return self._lines(['cat-file', type, sha1])

    def get_diff_stat(self, sha1):
        """Return the diffstat of a commit as lines with line endings."""

        return self._lines(
            ['diff-tree', '--stat', '-M', '--no-commit-id', sha1],
            keepends=True,
            )

    def get_diff(self, sha1):
        """Return the full patch of a commit as a single string.

        Bytes that are not valid UTF-8 are kept as surrogate escapes, so
        that encode_raw() gives back exactly what git printed."""

        return self._read(
            ['diff-tree', '-p', '-M', '--no-commit-id', sha1],
            keepends=True, errors='surrogateescape',
            )

    def get_name_status(self, sha1):
        return self._lines(['diff-tree', '--name-status', '-r', '-M', sha1])

    def get_revisions(self, spec, no_merges=False):
        """List the commits selected by spec, newest first."""

        args = ['rev-list']
        if no_merges:
            args.append('--no-merges')
        return self._lines(args + spec + ['--'])

    def get_summaries(self, spec, no_merges=False):
        """Describe the commits selected by spec, newest first.

        Each commit produces a "commit SHA1" line followed by a line
        "AUTHOR: SUBJECT"."""

        args = ['rev-list', '--pretty=format:%s' % (self.SUMMARY_FORMAT,)]
        if no_merges:
            args.append('--no-merges')
        return self._lines(args + spec + ['--'])


class Identity(object):
    """The author, committer or tagger recorded in a git object."""

    IDENTITY_RE = re.compile(
        r'^(?P<ident>.*) (?P<date>\d+) (?P<tz>[+-]\d{4})$'
        )
    ADDRESS_RE = re.compile(r'^(?P<name>.*?)\s*(?:<(?P<email>[^>]*)>)?$')

    def __init__(self, raw, name, email, date, tz):
        self.raw = raw
        self.name = name
        self.email = email
        self.date = date
        self.tz = tz

    @classmethod
    def parse(klass, text):
        """Parse "NAME <EMAIL> TIMESTAMP TZ"; return None if malformed."""

        m = klass.IDENTITY_RE.match(text)
        if not m:
            return None
        raw = m.group('ident')
        a = klass.ADDRESS_RE.match(raw)
        return klass(
            raw, a.group('name'), a.group('email') or '',
            int(m.group('date')), int(m.group('tz')),
            )

    def format_date(self):
        return format_date(self.date, self.tz)


class ObjectInfo(object):
    """The fields of a commit or tag object that notices report."""

    ROLES = ['author', 'committer', 'tagger']

    def __init__(self, sha1, type):
        self.sha1 = sha1
        self.type = type
        self.identities = {}
        self.tag = None
        self.log = []

    @classmethod
    def parse(klass, sha1, type, lines):
        """Build an ObjectInfo from the lines output by "git cat-file"."""

        info = klass(sha1, type)
        in_log = False
        for line in lines:
            if in_log:
                if line.startswith(SIGNATURE_MARKER):
                    break
                info.log.append(line)
            elif not line:
                in_log = True
            else:
                (key, sep, value) = line.partition(' ')
                if key in klass.ROLES:
                    identity = Identity.parse(value)
                    if identity is not None:
                        info.identities[key] = identity
                elif key == 'tag':
                    info.tag = value
        return info

    def get_identity(self):
        """Return the author of a commit or the tagger of a tag, or None."""

        if self.type == 'tag':
            return self.identities.get('tagger')
        else:
            return self.identities.get('author')

    def get_subject(self):
        if self.log:
            return self.log[0]
        return ''


def inspect(backend, sha1):
    """Read the commit or tag named by sha1 from backend."""

    type = backend.get_object_type(sha1)
    return ObjectInfo.parse(sha1, type, backend.get_object_contents(type, sha1))


def commits_between(backend, oldrev, newrev, exclude_refs=(), suppress_merges=False):
    """Return the commits introduced by moving a reference from oldrev to newrev.

    The result lists every commit reachable from newrev but neither
    from oldrev nor from any of exclude_refs, oldest first.  Raise
    IntegrityError if git reports something that is not an object
    name."""

    commits = []
    for line in backend.get_revisions(
            revision_spec(oldrev, newrev, exclude_refs), no_merges=suppress_merges):
        if not SHA1_RE.match(line):
            raise IntegrityError('invalid commit %r' % (line,))
        commits.append(line)
    commits.reverse()
    return commits


class Options(collections.namedtuple('Options', [
        'cia_project',
        'cia_address',
        'mailto',
        'max_notices',
        'repos_name',
        'max_diff_size',
        'gitweb_url',
        'include',
        'exclude',
        'ignore_merges',
        'envelope_sender',
        'sendmail_command',
        ])):
    """The settings in effect for one run, resolved once at startup.

    Each setting comes from the command line if given there, else from
    the "notify" section of the git configuration, else from DEFAULTS.
    """

    __slots__ = ()

    DEFAULTS = {
        'cia_project': None,
        'cia_address': CIA_ADDRESS,
        'mailto': None,
        'max_notices': 100,
        'repos_name': None,
        'max_diff_size': 10000,
        'gitweb_url': None,
        'include': [],
        'exclude': [],
        'ignore_merges': False,
        'envelope_sender': None,
        'sendmail_command': None,
        }

    # Setting name -> git config key (in the "notify" section):
    CONFIG_KEYS = {
        'cia_project': 'cia-project',
        'cia_address': 'cia-address',
        'mailto': 'mail',
        'max_notices': 'maxnotices',
        'repos_name': 'repository',
        'max_diff_size': 'maxdiff',
        'gitweb_url': 'baseurl',
        'include': 'include',
        'exclude': 'exclude',
        'ignore_merges': 'ignoremerges',
        'envelope_sender': 'envelopesender',
        'sendmail_command': 'sendmailcommand',
        }

    INT_SETTINGS = ['max_notices', 'max_diff_size']
    LIST_SETTINGS = ['include', 'exclude']
    BOOL_SETTINGS = ['ignore_merges']

    REPO_NAME_RE = re.compile(r'^(?P<name>.+?)(?:\.git)?$')

    @classmethod
    def create(klass, config, backend=None, **overrides):
        """Resolve every setting from overrides, config and DEFAULTS.

        Overrides that are None (or empty lists) count as unset.  If no
        repository name is set, it is derived from the git directory of
        backend."""

        values = {}
        for field in klass._fields:
            value = overrides.get(field)
            if value is None or value == []:
                value = klass._read_config(config, field)
            if value is None:
                value = klass.DEFAULTS[field]
            values[field] = value

        if values['repos_name'] is None:
            if backend is None:
                backend = GitBackend()
            values['repos_name'] = klass.compute_repos_name(backend.get_git_dir())

        return klass(**values)

    @classmethod
    def _read_config(klass, config, field):
        name = klass.CONFIG_KEYS[field]
        if field in klass.BOOL_SETTINGS:
            return config.get_bool(name)
        elif field in klass.LIST_SETTINGS:
            return config.get_list(name)
        value = config.get(name)
        if value is not None and field in klass.INT_SETTINGS:
            try:
                value = int(value)
            except ValueError:
                raise ConfigurationException(
                    'The value of "%s.%s" must be an integer, not %r'
                    % (config.section, name, value)
                    )
        return value

    @classmethod
    def compute_repos_name(klass, git_dir):
        """Name a repository after its directory, minus any ".git" suffix."""

        path = os.path.realpath(git_dir)
        if os.path.basename(path) == '.git':
            path = os.path.dirname(path)
        m = klass.REPO_NAME_RE.match(os.path.basename(path))
        if m:
            return m.group('name')
        else:
            return 'unknown repository'

    @property
    def base_url(self):
        """The browser URL of this repository, or None."""

        if not self.gitweb_url:
            return None
        return '%s/%s.git' % (self.gitweb_url, self.repos_name)


class Notice(object):
    """A message ready to be handed to a Mailer."""

    def __init__(self, recipient, subject, content_type, lines):
        self.recipient = recipient
        self.subject = subject
        self.content_type = content_type
        self.lines = lines

    @property
    def body(self):
        return ''.join(self.lines)

    def __repr__(self):
        return '<Notice to %s: %r>' % (self.recipient, self.subject)


class NoticeFormatter(object):
    """Turn commits and tags into notices.

    The mail notices are plain text for people, the CIA notices are XML
    documents for the feed listener."""

    FILE_ACTIONS = {
        'A': 'add',
        'M': 'modify',
        'D': 'remove',
        }
    RENAME_RE = re.compile(r'^R\d*$')
    SUMMARY_COMMIT_RE = re.compile(r'^commit (?P<sha1>[0-9a-f]{40})$')

    MAIL_CONTENT_TYPE = 'text/plain; charset=UTF-8'
    CIA_CONTENT_TYPE = 'text/xml'
    CIA_SUBJECT = 'DeliverXML'

    def __init__(self, options, backend):
        self.options = options
        self.backend = backend

    def get_url(self, action, sha1):
        base = self.options.base_url
        if base:
            return '%s/?a=%s;h=%s' % (base, action, sha1)
        return None

    def get_values(self, ref, info):
        """Return a dictionary {keyword : expansion} for a notice about info.

        Optional values (URLs, identity) are left out of the dictionary
        when they are not available."""

        values = {
            'repos_name': self.options.repos_name,
            'ref': ref,
            'sha1': info.sha1,
            }
        for (key, action) in [
                ('commit_url', 'commit'),
                ('tag_url', 'tag'),
                ('diff_url', 'commitdiff'),
                ]:
            url = self.get_url(action, info.sha1)
            if url:
                values[key] = url

        identity = info.get_identity()
        if identity is not None:
            values['tagger' if info.type == 'tag' else 'author'] = identity.raw
            values['date'] = identity.format_date()
        return values

    @staticmethod
    def expand_lines(template, values):
        """Break template into lines and expand each line.

        Silently skip lines that contain references to unknown
        variables."""

        for line in template.splitlines(True):
            try:
                yield line % values
            except KeyError:
                pass

    def format_mail_notice(self, ref, info):
        """Return the mail notice describing a commit or a tag."""

        if info.type == 'tag':
            return self.format_tag_notice(ref, info)
        else:
            return self.format_commit_notice(ref, info)

    def format_tag_notice(self, ref, info):
        lines = list(self.expand_lines(TAG_NOTICE_TEMPLATE, self.get_values(ref, info)))
        lines.extend('%s\n' % (line,) for line in info.log)

        tagger = info.identities.get('tagger')
        subject = 'Tag %s : %s: %s' % (
            info.tag or '', tagger.name if tagger else '', info.get_subject(),
            )
        return Notice(self.options.mailto, subject, self.MAIL_CONTENT_TYPE, lines)

    def format_commit_notice(self, ref, info):
        values = self.get_values(ref, info)
        lines = list(self.expand_lines(COMMIT_NOTICE_TEMPLATE, values))
        lines.extend('%s\n' % (line,) for line in info.log)
        lines.extend(['\n', '---\n', '\n'])

        stat = self.backend.get_diff_stat(info.sha1)
        if stat:
            lines.extend(stat)
            lines.append('\n')

        diff = self.backend.get_diff(info.sha1)
        max_diff_size = self.options.max_diff_size
        if max_diff_size == -1 or len(encode_raw(diff)) < max_diff_size:
            lines.extend(split_lines(diff, True))
        else:
            lines.extend(self.expand_lines(DIFF_LINK_TEMPLATE, values))

        author = info.identities.get('author')
        subject = '%s: %s' % (author.name if author else '', info.get_subject())
        return Notice(self.options.mailto, subject, self.MAIL_CONTENT_TYPE, lines)

    def generate_file_lines(self, sha1):
        for line in self.backend.get_name_status(sha1):
            fields = line.split('\t')
            if len(fields) == 2 and fields[0] in self.FILE_ACTIONS:
                yield '        <file action="%s">%s</file>\n' % (
                    self.FILE_ACTIONS[fields[0]], xml_escape(fields[1]),
                    )
            elif len(fields) == 3 and self.RENAME_RE.match(fields[0]):
                yield '        <file action="rename" to="%s">%s</file>\n' % (
                    xml_escape(fields[2]), xml_escape(fields[1]),
                    )

    def format_cia_notice(self, ref, info):
        """Return the XML notice for a commit, or None for other objects."""

        if info.type != 'commit':
            return None

        values = {
            'generator': xml_escape(CIA_GENERATOR),
            'project': xml_escape(self.options.cia_project),
            'module': xml_escape(self.options.repos_name),
            'branch': xml_escape(ref),
            'revision': info.sha1[:10],
            'log': xml_escape('\n'.join(info.log)),
            }
        author = info.identities.get('author')
        if author is not None:
            values['author'] = xml_escape(author.raw)
            values['timestamp'] = author.date
        url = self.get_url('commit', info.sha1)
        if url:
            values['url'] = xml_escape(url)

        lines = list(self.expand_lines(CIA_HEADER_TEMPLATE, values))
        lines.extend(self.generate_file_lines(info.sha1))
        lines.extend(self.expand_lines(CIA_FOOTER_TEMPLATE, values))
        return Notice(
            self.options.cia_address, self.CIA_SUBJECT, self.CIA_CONTENT_TYPE, lines,
            )

    def format_summary_notice(self, ref, oldrev, newrev):
        """Return a single mail listing all of the commits in oldrev..newrev."""

        base = self.options.base_url
        lines = []
        for line in self.backend.get_summaries(
                revision_spec(oldrev, newrev, self.options.exclude),
                no_merges=self.options.ignore_merges):
            m = self.SUMMARY_COMMIT_RE.match(line)
            if base and m:
                line = 'URL:    %s' % (self.get_url('commit', m.group('sha1')),)
            lines.append('%s\n' % (line,))

        return Notice(
            self.options.mailto, 'New commits on branch %s' % (ref,),
            self.MAIL_CONTENT_TYPE, lines,
            )


class Notifier(object):
    """Decide which notices a reference update deserves, and send them."""

    def __init__(self, options, backend, mailer, formatter=None):
        self.options = options
        self.backend = backend
        self.mailer = mailer
        self.formatter = formatter or NoticeFormatter(options, backend)

    @staticmethod
    def short_refname(refname):
        if refname.startswith(HEADS_PREFIX):
            return refname[len(HEADS_PREFIX):]
        return refname

    def send(self, notice):
        """Send notice, reporting but otherwise ignoring delivery failures."""

        if notice is None:
            return
        try:
            self.mailer.send(notice)
        except (CommandError, OSError) as e:
            sys.stderr.write(
                '*** Error sending notice %r to %s\n'
                '*** %s\n'
                % (notice.subject, notice.recipient, e,)
                )

    def send_all_notices(self, oldrev, newrev, refname):
        ref = self.short_refname(refname)

        if self.options.include and ref not in self.options.include:
            return

        if newrev == ZEROS:
            # A deleted reference introduces nothing.
            return

        if oldrev == ZEROS:
            # A new reference: describe its tip only.
            if self.options.mailto:
                info = inspect(self.backend, newrev)
                self.send(self.formatter.format_mail_notice(ref, info))
            return

        commits = commits_between(
            self.backend, oldrev, newrev,
            exclude_refs=self.options.exclude,
            suppress_merges=self.options.ignore_merges,
            )

        if len(commits) > self.options.max_notices:
            if self.options.mailto:
                self.send(self.formatter.format_summary_notice(ref, oldrev, newrev))
            return

        for sha1 in commits:
            info = inspect(self.backend, sha1)
            if self.options.mailto:
                self.send(self.formatter.format_mail_notice(ref, info))
            if self.options.cia_project:
                self.send(self.formatter.format_cia_notice(ref, info))


class Mailer(object):
    """An object that can send notices."""

    def send(self, notice):
        """Deliver notice (a Notice instance) to notice.recipient."""

        raise NotImplementedError()

    @staticmethod
    def generate_message(notice):
        """Iterate over the lines of an RFC 2822 message carrying notice."""

        yield 'To: %s\n' % (notice.recipient,)
        yield 'Subject: %s\n' % (header_encode(notice.subject, header_name='Subject'),)
        yield 'MIME-Version: 1.0\n'
        yield 'Content-Type: %s\n' % (notice.content_type,)
        yield 'Content-Transfer-Encoding: 8bit\n'
        yield '\n'
        for line in notice.lines:
            yield line


class SendMailer(Mailer):
    """Send notices using 'sendmail -oi -t'."""

    SENDMAIL_CANDIDATES = [
        '/usr/sbin/sendmail',
        '/usr/lib/sendmail',
        ]

    @staticmethod
    def find_sendmail():
        for path in SendMailer.SENDMAIL_CANDIDATES:
            if os.access(path, os.X_OK):
                return path
        else:
            raise ConfigurationException(
                'No sendmail executable found.  '
                'Try setting notify.sendmailcommand.'
                )

    def __init__(self, command=None, envelopesender=None):
        """Construct a SendMailer instance.

        command should be the command and arguments used to invoke
        sendmail, as a list of strings.  If an envelopesender is
        provided, it will also be passed to the command, via '-f
        envelopesender'."""

        if command:
            self.command = command[:]
        else:
            self.command = [self.find_sendmail(), '-oi', '-t']

        if envelopesender:
            self.command.extend(['-f', envelopesender])

    def send(self, notice):
        p = subprocess.Popen(self.command, stdin=subprocess.PIPE)
        try:
            for line in self.generate_message(notice):
                p.stdin.write(encode_raw(line))
        except Exception:
            sys.stderr.write(
                '*** Error while generating notice\n'
                '***  - mail sending aborted.\n'
                )
            p.terminate()
            p.wait()
            raise
        else:
            p.stdin.close()
            retcode = p.wait()
            if retcode:
                raise CommandError(self.command, retcode)


class OutputMailer(Mailer):
    """Write notices to an output stream, bracketed by lines of '=' characters.

    This is intended for debugging purposes.  Bytes of a diff that are
    not valid UTF-8 are shown as replacement characters."""

    SEPARATOR = '=' * 75 + '\n'

    def __init__(self, f):
        self.f = f

    def send(self, notice):
        self.f.write(self.SEPARATOR)
        self.f.write('To: %s\n' % (notice.recipient,))
        self.f.write('Subject: %s\n' % (notice.subject,))
        self.f.write('Content-Type: %s\n' % (notice.content_type,))
        self.f.write('\n')
        for line in notice.lines:
            self.f.write(encode_raw(line).decode(ENCODING, 'replace'))
        self.f.write(self.SEPARATOR)


UPDATE_RE = re.compile(r'^(?P<oldrev>[0-9a-f]{40}) (?P<newrev>[0-9a-f]{40}) (?P<refname>.*)$')


def read_updates(f):
    """Iterate over the (oldrev, newrev, refname) triples listed in f.

    Lines that do not have the format written by git to a
    post-receive hook are skipped."""

    for line in f:
        m = UPDATE_RE.match(line.rstrip('\r\n'))
        if m:
            yield (m.group('oldrev'), m.group('newrev'), m.group('refname'))


def choose_mailer(options, stdout=False):
    if stdout:
        return OutputMailer(sys.stdout)

    command = options.sendmail_command
    if command:
        command = shlex.split(command)
    return SendMailer(command=command, envelopesender=options.envelope_sender)


def run(notifier, updates):
    """Send the notices for each of updates.

    An update whose commits cannot be listed reliably is abandoned with
    an error message, and the others are still processed.  Return True
    iff every update was handled."""

    ok = True
    for (oldrev, newrev, refname) in updates:
        try:
            notifier.send_all_notices(oldrev, newrev, refname)
        except IntegrityError as e:
            sys.stderr.write(
                '*** %s\n'
                '*** no notices sent for %s %s..%s\n'
                % (e, refname, oldrev, newrev,)
                )
            ok = False
    return ok


def main(args):
    parser = optparse.OptionParser(
        description=__doc__,
        usage='%prog [OPTIONS]\n   or: %prog [OPTIONS] OLDREV NEWREV REFNAME',
        version='%prog ' + __version__,
        )

    parser.add_option(
        '-c', '--cia-project', action='store', default=None,
        help='Send CIA notices under the specified project name.',
        )
    parser.add_option(
        '--cia-address', action='store', default=None,
        help='Address that CIA notices are mailed to (default %s).' % (CIA_ADDRESS,),
        )
    parser.add_option(
        '-m', '--mailto', action='store', default=None,
        help='Send mail notices to the specified address.',
        )
    parser.add_option(
        '-n', '--max-notices', action='store', type='int', default=None,
        help='Maximum number of individual notices to send for one update.',
        )
    parser.add_option(
        '-r', '--repository', dest='repos_name', action='store', default=None,
        help='Set the repository name shown in notices.',
        )
    parser.add_option(
        '-s', '--max-diff', dest='max_diff_size', action='store', type='int',
        default=None,
        help='Maximum size of a diff in bytes (-1 for no limit).',
        )
    parser.add_option(
        '-u', '--url', dest='gitweb_url', action='store', default=None,
        help='Base URL of the gitweb repository browser.',
        )
    parser.add_option(
        '-i', '--include', action='append', default=[],
        help='Only report changes to this branch (may be repeated).',
        )
    parser.add_option(
        '-x', '--exclude', action='append', default=[],
        help='Leave out the commits reachable from this branch (may be repeated).',
        )
    parser.add_option(
        '-X', '--no-merges', dest='ignore_merges', action='store_true', default=None,
        help='Do not send notices for merge commits.',
        )
    parser.add_option(
        '-d', '--stdout', action='store_true', default=False,
        help='Output notices to stdout rather than sending them.',
        )

    (options, args) = parser.parse_args(args)

    if args:
        if len(args) != 3:
            parser.error('Need zero or three non-option arguments')
        for rev in args[:2]:
            if not SHA1_RE.match(rev):
                parser.error('Invalid revision %r' % (rev,))

    backend = GitBackend()
    config = Config('notify')

    try:
        settings = Options.create(
            config, backend,
            cia_project=options.cia_project,
            cia_address=options.cia_address,
            mailto=options.mailto,
            max_notices=options.max_notices,
            repos_name=options.repos_name,
            max_diff_size=options.max_diff_size,
            gitweb_url=options.gitweb_url,
            include=options.include,
            exclude=options.exclude,
            ignore_merges=options.ignore_merges,
            )
        mailer = choose_mailer(settings, stdout=options.stdout)
        notifier = Notifier(settings, backend, mailer)

        # Dual mode: if arguments were specified on the command line,
        # handle that one update; otherwise read updates from stdin.
        if args:
            updates = [tuple(args)]
        else:
            updates = read_updates(sys.stdin)
        if not run(notifier, updates):
            sys.exit(1)
    except (ConfigurationException, CommandError) as e:
        sys.exit(str(e))


def _main():
    main(sys.argv[1:])


if __name__ == '__main__':
    _main()
