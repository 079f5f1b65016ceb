import logging
import unittest

from fakes import FakeRunner, FakeTree
from liotarget.initiator import LocalInitiator
from liotarget.utils import ToolFailureError

logging.basicConfig()
log = logging.getLogger('TestInitiator')
log.setLevel(logging.INFO)

TARGET = 'iqn.2007-01.net.appliance.dev.device1:agenthost1'
DISCOVERY = f'''\
10.0.0.5:3260,1 {TARGET}
10.0.0.5:3260,1 iqn.2007-01.net.appliance.dev.device1:agenthost2
'''


class TestLocalInitiator(unittest.TestCase):

    def setUp(self):
        log.info(self._testMethodName)
        self.runner = FakeRunner()
        self.tree = FakeTree()
        self.initiator = LocalInitiator(runner=self.runner, tree=self.tree)

    def test_discover(self):
        self.runner.queue(0, DISCOVERY)
        self.assertEqual(self.initiator.discover_by_ip('10.0.0.5'),
                         [TARGET, 'iqn.2007-01.net.appliance.dev.device1:agenthost2'])
        self.assertEqual(self.runner.calls, [['iscsiadm', '-m', 'discovery', '-t', 'sendtargets',
                                              '-p', '10.0.0.5:3260']])

    def test_discover_failure(self):
        self.runner.queue(4, '', 'iscsiadm: connection login retries exceeded')
        with self.assertRaises(ToolFailureError) as cm:
            self.initiator.discover_by_ip('10.0.0.5', 3261)
        self.assertEqual(cm.exception.returncode, 4)
        self.assertIn('10.0.0.5:3261', str(cm.exception))

    def test_list_records(self):
        self.runner.queue(0, DISCOVERY)
        self.assertEqual(self.initiator.list_records()[0], ('10.0.0.5:3260', TARGET))

    def test_list_records_empty(self):
        self.runner.queue(21, '', 'iscsiadm: No records found')
        self.assertEqual(self.initiator.list_records(), [])

    def test_login(self):
        self.initiator.login_target(TARGET, '10.0.0.5')
        self.assertEqual(self.runner.calls, [['iscsiadm', '-m', 'node', '-T', TARGET,
                                              '-p', '10.0.0.5:3260', '--login']])

    def test_login_twice(self):
        self.runner.queue(15, '', 'iscsiadm: session exists')
        self.initiator.login_target(TARGET)
        self.assertEqual(self.runner.calls, [['iscsiadm', '-m', 'node', '-T', TARGET, '--login']])

    def test_login_failure(self):
        self.runner.queue(24, '', 'iscsiadm: Login failed to authenticate')
        self.assertRaises(ToolFailureError, self.initiator.login_target, TARGET, '10.0.0.5')

    def test_logout_without_session(self):
        self.runner.queue(21)
        self.initiator.logout_target(TARGET, '10.0.0.5')

    def test_logout_all(self):
        self.runner.queue(21)
        self.initiator.logout_all_by_ip('10.0.0.5')
        self.assertEqual(self.runner.calls, [['iscsiadm', '-m', 'node', '-p', '10.0.0.5:3260',
                                              '--logout']])

    def test_clear_discovery_entry(self):
        for returncode in (0, 6, 21):
            self.runner.queue(returncode)
            self.initiator.clear_discovery_entry('10.0.0.5')
        self.runner.queue(1)
        self.assertRaises(ToolFailureError, self.initiator.clear_discovery_entry, '10.0.0.5')

    def test_block_devices(self):
        by_path = '/dev/disk/by-path'
        for name, device in [(f'ip-10.0.0.5:3260-iscsi-{TARGET}-lun-0', '/dev/sdc'),
                             (f'ip-10.0.0.5:3260-iscsi-{TARGET}-lun-0-part1', '/dev/sdc1'),
                             (f'ip-10.0.0.5:3260-iscsi-{TARGET}-lun-1', '/dev/sdd'),
                             (f'ip-10.0.0.5:3260-iscsi-{TARGET}2-lun-0', '/dev/sde'),
                             (f'ip-10.0.0.6:3260-iscsi-{TARGET}-lun-0', '/dev/sdf')]:
            self.tree.add_file(f'{by_path}/{name}')
            self.tree.links[f'{by_path}/{name}'] = device

        self.assertEqual(self.initiator.get_block_device_of_target(TARGET, '10.0.0.5'),
                         {0: '/dev/sdc', 1: '/dev/sdd'})
        self.assertEqual(self.initiator.get_block_device_of_target(TARGET, '10.0.0.7'), {})

if __name__ == '__main__':
    unittest.main()
