import pytest  # noqa
import patchhub
import patchhub.lore
import os


@pytest.fixture(scope="function", autouse=True)
def settestdefaults(tmp_path):
    patchhub.MAIN_CONFIG = dict(patchhub.DEFAULT_CONFIG)
    patchhub.USER_CONFIG = {
        'name': 'Test Override',
        'email': 'test-override@example.com',
    }
    patchhub.TARGETS = patchhub.TargetRegistry()
    patchhub.lore.REQSESSION = None
    os.environ['XDG_DATA_HOME'] = str(tmp_path / 'data')
    os.environ['XDG_CACHE_HOME'] = str(tmp_path / 'cache')


@pytest.fixture(scope="function")
def sampledir(request):
    return os.path.join(request.fspath.dirname, 'samples')


@pytest.fixture(scope="function")
def thread_bytes(sampledir):
    with open(os.path.join(sampledir, 'thread-frob-v2.mbox'), 'rb') as fh:
        return fh.read()


@pytest.fixture(scope="function")
def feed_bytes(sampledir):
    with open(os.path.join(sampledir, 'feed-netdev.atom'), 'rb') as fh:
        return fh.read()


@pytest.fixture(scope="function")
def patchset(thread_bytes):
    return patchhub.lore.patchset_from_thread('20240502100000.4242-1-jane@example.com', thread_bytes, 'netdev')
