import os
import sys

import pytest

TEST_DIR = os.path.abspath(os.path.dirname(__file__))
PROJ_DIR = os.path.dirname(TEST_DIR)
sys.path.insert(0, os.path.join(PROJ_DIR, 'git-notify'))

import git_notify


AUTHOR = 'A U Thor <author@example.com>'
COMMITTER = 'C O Mitter <committer@example.com>'
TAGGER = 'T A Gger <tagger@example.com>'


class FakeBackend(object):
    """An in-memory repository with a single linear history."""

    def __init__(self):
        self.objects = {}
        self.subjects = {}
        self.history = []
        self.merges = set()
        self.refs = {}
        self.diff_stats = {}
        self.diffs = {}
        self.name_status = {}
        self.revision_queries = []
        self.garbage = []
        self._counter = 0

    def _new_sha1(self):
        self._counter += 1
        return '%040x' % (0xc0ffee000 + self._counter,)

    def add_commit(self, subject, body=None, author=AUTHOR,
                   date='1000000000 -0500', merge=False):
        sha1 = self._new_sha1()
        lines = ['tree %040x' % (0xdeadbeef,)]
        if self.history:
            lines.append('parent %s' % (self.history[-1],))
        lines.extend([
            'author %s %s' % (author, date),
            'committer %s 1000000100 +0000' % (COMMITTER,),
            '',
            subject,
            ])
        if body is not None:
            lines.extend(['', body])
        self.objects[sha1] = ('commit', lines)
        self.subjects[sha1] = subject
        self.history.append(sha1)
        if merge:
            self.merges.add(sha1)
        return sha1

    def add_commits(self, count):
        return [self.add_commit('Change number %d.' % (i + 1,)) for i in range(count)]

    def add_tag(self, name, message, target=None, signed=False):
        sha1 = self._new_sha1()
        lines = [
            'object %s' % (target or self.history[-1],),
            'type commit',
            'tag %s' % (name,),
            'tagger %s 1000000000 +0100' % (TAGGER,),
            '',
            ] + message.split('\n')
        if signed:
            lines.extend([
                '-----BEGIN PGP SIGNATURE-----',
                'iEYEABECAAYFAkqZ',
                '-----END PGP SIGNATURE-----',
                ])
        self.objects[sha1] = ('tag', lines)
        return sha1

    def get_git_dir(self):
        return '/srv/git/wine.git'

    def get_object_type(self, sha1):
        if sha1 not in self.objects:
            raise git_notify.CommandError(['git', 'cat-file', '-t', sha1], 128)
        return self.objects[sha1][0]

    def get_object_contents(self, type, sha1):
        return list(self.objects[sha1][1])

    def get_diff_stat(self, sha1):
        return list(self.diff_stats.get(sha1, []))

    def get_diff(self, sha1):
        return self.diffs.get(sha1, '')

    def get_name_status(self, sha1):
        return [sha1] + list(self.name_status.get(sha1, []))

    def _select(self, spec, no_merges):
        """Emulate "git rev-list ^OLD NEW ^EXCLUDED..." on the linear history."""

        oldrev = spec[0][1:]
        newrev = spec[1]
        stop = self.history.index(oldrev)
        for excluded in spec[2:]:
            stop = max(stop, self.history.index(self.refs[excluded[1:]]))
        selected = self.history[stop + 1:self.history.index(newrev) + 1]
        if no_merges:
            selected = [sha1 for sha1 in selected if sha1 not in self.merges]
        selected.reverse()
        return selected

    def get_revisions(self, spec, no_merges=False):
        self.revision_queries.append((list(spec), no_merges))
        return self._select(spec, no_merges) + self.garbage

    def get_summaries(self, spec, no_merges=False):
        lines = []
        for sha1 in self._select(spec, no_merges):
            lines.append('commit %s' % (sha1,))
            lines.append('A U Thor: %s' % (self.subjects[sha1],))
        return lines


class RecordingMailer(git_notify.Mailer):
    def __init__(self):
        self.notices = []

    def send(self, notice):
        self.notices.append(notice)

    def subjects(self):
        return [notice.subject for notice in self.notices]

    def recipients(self):
        return [notice.recipient for notice in self.notices]


class FakeConfig(object):
    """Stands in for git_notify.Config with a dictionary of settings."""

    section = 'notify'

    def __init__(self, **settings):
        self.settings = dict(
            (name.replace('_', '-'), value) for (name, value) in settings.items()
            )

    def get(self, name, default=None):
        value = self.settings.get(name, default)
        if isinstance(value, list):
            return value[-1]
        return value

    def get_bool(self, name, default=None):
        value = self.settings.get(name)
        if value is None:
            return default
        return value in ('true', 'yes', 'on', '1')

    def get_list(self, name, default=None):
        value = self.settings.get(name)
        if value is None:
            return default
        return value.split()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def make_options():
    def make(**kw):
        values = dict(git_notify.Options.DEFAULTS)
        values['repos_name'] = 'wine'
        values.update(kw)
        return git_notify.Options(**values)
    return make


@pytest.fixture
def fake_config():
    return FakeConfig
