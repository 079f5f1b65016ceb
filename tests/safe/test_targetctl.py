import contextlib
import io
import logging
import os
import shutil
import tempfile
import unittest

from fakes import (FakeBlockDevices, FakeLoopManager, FakeRestoredFlag,
                   FakeTargetcli, FakeTargetctl, FakeTree, NoopLock)
from liotarget import targetctl
from liotarget.target import TargetStore

logging.basicConfig()
log = logging.getLogger('TestTargetctl')
log.setLevel(logging.INFO)

TARGET = 'iqn.2007-01.net.appliance.dev.device1:agenthost1'


class TestTargetctlCommands(unittest.TestCase):

    def setUp(self):
        log.info(self._testMethodName)
        self.dir = tempfile.mkdtemp()
        self.tree = FakeTree()
        self.targetcli = FakeTargetcli(self.tree)
        self.targetctl = FakeTargetctl()
        self.restored = FakeRestoredFlag(restored=False)
        self.store = TargetStore(hostname='device1',
                                 save_file=os.path.join(self.dir, 'saveconfig.json'),
                                 tree=self.tree, targetcli=self.targetcli,
                                 targetctl=self.targetctl,
                                 loops=FakeLoopManager(self.tree),
                                 block_devices=FakeBlockDevices(), lock=NoopLock(),
                                 restored_flag=self.restored)

    def tearDown(self):
        shutil.rmtree(self.dir)

    def test_save_before_restore(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                targetctl.save(self.store)
        self.assertEqual(cm.exception.code, 1)

    def test_restore_without_saved_file(self):
        with contextlib.redirect_stdout(io.StringIO()) as out:
            targetctl.restore(self.store)
        self.assertIn('No saved config file', out.getvalue())
        self.assertTrue(self.restored.restored)
        self.assertEqual(self.targetctl.calls, [])

    def test_restore_then_save(self):
        with open(self.store.save_file, 'w') as f:
            f.write('{}')
        targetctl.restore(self.store)
        targetctl.save(self.store)
        self.assertEqual([call[0] for call in self.targetctl.calls], ['restore', 'save'])

    def test_clear(self):
        self.restored.restored = True
        targetctl.clear(self.store)
        self.assertFalse(self.restored.restored)

    def test_list(self):
        self.targetcli.create_target(TARGET)
        self.targetcli.add_lun_entry(TARGET, 0, '0a1b2c3d', '/dev/loop0')
        with contextlib.redirect_stdout(io.StringIO()) as out:
            targetctl.list_targets(self.store)
        self.assertEqual(out.getvalue(), f'{TARGET}\n  lun0: /dev/loop0\n')

if __name__ == '__main__':
    unittest.main()
