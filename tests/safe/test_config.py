import json
import logging
import os
import shutil
import stat
import tempfile
import unittest

from fakes import (FakeBlockDevices, FakeLoopManager, FakeRestoredFlag,
                   FakeTargetcli, FakeTargetctl, FakeTree, NoopLock)
from liotarget.config import read_config, strip_unpersisted, write_config
from liotarget.target import TargetStore
from liotarget.utils import InconsistentStateError

logging.basicConfig()
log = logging.getLogger('TestConfig')
log.setLevel(logging.INFO)

PERSISTENT = 'iqn.2007-01.net.appliance.dev.device1:agenthost1'
PERSISTENT_2 = 'iqn.2007-01.net.appliance.dev.device1:agenthost2'
TEMPORARY = 'iqn.2007-01.net.appliance.dev.temp.device1:agenthost1-1234'


def storage_object(name, dev, plugin='block'):
    return {'plugin': plugin, 'name': name, 'dev': dev, 'attributes': {}}

def target(wwn, *backstores):
    luns = [{'index': index, 'storage_object': backstore}
            for index, backstore in enumerate(backstores)]
    return {'wwn': wwn, 'fabric': 'iscsi',
            'tpgs': [{'tag': 1, 'enable': True, 'luns': luns}]}

def snapshot():
    return {
        'storage_objects': [
            storage_object('0a0a0a0a', '/dev/loop0'),
            storage_object('1b1b1b1b', '/dev/sdb'),
            storage_object('2c2c2c2c_temp', '/dev/sdc'),
        ],
        'targets': [
            target(TEMPORARY, '/backstores/block/2c2c2c2c_temp'),
            target(PERSISTENT, '/backstores/block/0a0a0a0a'),
            target(PERSISTENT_2, '/backstores/block/1b1b1b1b', '/backstores/block/0a0a0a0a'),
        ],
    }

def is_temporary(wwn):
    return '.temp.' in wwn

def is_unpersisted(so):
    return so['name'].endswith('_temp') or so['dev'].startswith('/dev/loop')


class TestStripUnpersisted(unittest.TestCase):

    def setUp(self):
        log.info(self._testMethodName)

    def test_strip(self):
        config = strip_unpersisted(snapshot(), is_temporary, is_unpersisted)

        self.assertEqual([so['name'] for so in config['storage_objects']], ['1b1b1b1b'])
        self.assertEqual([t['wwn'] for t in config['targets']], [PERSISTENT_2])
        self.assertEqual(config['targets'][0]['tpgs'][0]['luns'],
                         [{'index': 0, 'storage_object': '/backstores/block/1b1b1b1b'}])

    def test_keeps_target_without_luns(self):
        config = {'storage_objects': [], 'targets': [target(PERSISTENT)]}
        config = strip_unpersisted(config, is_temporary, is_unpersisted)
        self.assertEqual([t['wwn'] for t in config['targets']], [PERSISTENT])

    def test_plugin_is_part_of_the_reference(self):
        config = {
            'storage_objects': [storage_object('3d3d3d3d', '/dev/loop1', plugin='fileio')],
            'targets': [target(PERSISTENT, '/backstores/block/3d3d3d3d')],
        }
        config = strip_unpersisted(config, is_temporary, is_unpersisted)
        self.assertEqual(config['storage_objects'], [])
        self.assertEqual([t['wwn'] for t in config['targets']], [PERSISTENT])

    def test_empty(self):
        self.assertEqual(strip_unpersisted({}, is_temporary, is_unpersisted),
                         {'storage_objects': [], 'targets': []})


class TestSaveConfiguration(unittest.TestCase):

    def setUp(self):
        log.info(self._testMethodName)
        self.dir = tempfile.mkdtemp()
        self.save_file = os.path.join(self.dir, 'target', 'saveconfig.json')
        self.tree = FakeTree()
        self.loops = FakeLoopManager(self.tree)
        self.targetcli = FakeTargetcli(self.tree)
        self.lock = NoopLock()
        self.targetctl = FakeTargetctl(snapshot(), lock=self.lock)
        self.restored = FakeRestoredFlag(restored=True)
        self.store = TargetStore(hostname='device1', save_file=self.save_file,
                                 tree=self.tree, targetcli=self.targetcli,
                                 targetctl=self.targetctl, loops=self.loops,
                                 block_devices=FakeBlockDevices(),
                                 lock=self.lock, restored_flag=self.restored)
        self.targetcli.add_backstore('block', '1b1b1b1b', '/dev/sdb')

    def tearDown(self):
        shutil.rmtree(self.dir)

    def test_save(self):
        self.assertTrue(self.store.save_configuration())

        saved = read_config(self.save_file)
        self.assertEqual([so['name'] for so in saved['storage_objects']], ['1b1b1b1b'])
        self.assertEqual([t['wwn'] for t in saved['targets']], [PERSISTENT_2])
        self.assertEqual(stat.S_IMODE(os.stat(self.save_file).st_mode), 0o600)
        self.assertEqual(os.listdir(os.path.dirname(self.save_file)), ['saveconfig.json'])

    def test_save_holds_lock(self):
        self.assertTrue(self.store.save_configuration())
        self.assertEqual(self.targetctl.save_lock_depth, 1)
        self.assertEqual(self.lock.depth, 0)

    def test_refuses_before_restore(self):
        self.restored.restored = False
        with self.assertLogs('liotarget.target', 'WARNING'):
            self.assertFalse(self.store.save_configuration())
        self.assertFalse(os.path.exists(self.save_file))
        self.assertEqual(self.targetctl.calls, [])

    def test_restore_backstore_is_not_saved(self):
        self.targetcli.add_backstore('block', '6f6f6f6f', '/homePool/agent1-iscsimnt/disk.img')
        self.targetctl.snapshot['storage_objects'].append(
            storage_object('6f6f6f6f', '/homePool/agent1-iscsimnt/disk.img', plugin='fileio'))
        self.targetctl.snapshot['targets'].append(
            target('iqn.2007-01.net.appliance.dev.device1:agenthost3',
                   '/backstores/fileio/6f6f6f6f'))

        self.assertTrue(self.store.save_configuration())

        saved = read_config(self.save_file)
        self.assertEqual([so['name'] for so in saved['storage_objects']], ['1b1b1b1b'])
        self.assertEqual([t['wwn'] for t in saved['targets']], [PERSISTENT_2])

    def test_duplicate_backstore_names(self):
        self.targetcli.add_backstore('fileio', '1b1b1b1b', '/data/other.img')
        self.assertRaises(InconsistentStateError, self.store.save_configuration)
        self.assertFalse(os.path.exists(self.save_file))

    def test_clear(self):
        self.store.clear_configuration()
        self.assertEqual(self.targetctl.calls, [('clear',)])
        self.assertFalse(self.store.is_configuration_restored())
        self.assertFalse(self.store.save_configuration())

    def test_restore(self):
        self.restored.restored = False
        self.store.restore_configuration()
        self.assertEqual(self.targetctl.calls, [('restore', self.save_file)])
        self.assertTrue(self.store.is_configuration_restored())


class TestWriteConfig(unittest.TestCase):

    def setUp(self):
        log.info(self._testMethodName)
        self.dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.dir)

    def test_replaces_file(self):
        path = os.path.join(self.dir, 'saveconfig.json')
        with open(path, 'w') as f:
            f.write('old')
        os.chmod(path, 0o644)

        write_config({'targets': [], 'storage_objects': []}, path)

        with open(path) as f:
            self.assertEqual(json.load(f), {'targets': [], 'storage_objects': []})
        self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o600)
        self.assertFalse(os.path.exists(path + '.temp'))

if __name__ == '__main__':
    unittest.main()
