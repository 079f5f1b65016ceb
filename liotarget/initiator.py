'''
This host's own open-iscsi initiator, driven through iscsiadm(8).

This file is part of liotarget.

Licensed under the Apache License, Version 2.0 (the "License"); you may
not use this file except in compliance with the License. You may obtain
a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the
License for the specific language governing permissions and limitations
under the License.
'''

import logging
import os

from .tree import ResourceTree
from .utils import ToolFailureError, run

log = logging.getLogger(__name__)

iscsiadm = 'iscsiadm'
default_port = 3260
by_path_dir = '/dev/disk/by-path'

# iscsiadm exit codes
ISCSI_ERR_NO_OBJS_FOUND = 21
ISCSI_ERR_SESS_EXISTS = 15
ISCSI_ERR_IDBM = 6


def _portal(ip, port):
    return f"{ip}:{port}"

def parse_portal_lines(output):
    '''
    Parses "<ip>:<port>,<tpgt> <target>" lines, as printed for discovery
    results and node records.

    >>> parse_portal_lines("10.0.0.1:3260,1 iqn.2007-01.a:b\\n")
    [('10.0.0.1:3260', 'iqn.2007-01.a:b')]
    '''
    records = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) != 2:
            continue
        portal = fields[0].split(',')[0]
        records.append((portal, fields[1]))
    return records


class LocalInitiator:
    '''
    Every operation is synchronous and idempotent: exit codes meaning
    the desired state is already reached count as success.
    '''

    def __init__(self, runner=run, tree=None):
        self._run = runner
        self._tree = tree if tree is not None else ResourceTree()

    def _iscsiadm(self, args, message, success=()):
        result = self._run([iscsiadm] + list(args))
        if not result.ok and result.returncode not in success:
            raise ToolFailureError(f"{message}: {result.error_output}", result)
        return result

    def _node_args(self, target, ip, port):
        args = ['-m', 'node', '-T', target]
        if ip is not None:
            args += ['-p', _portal(ip, port)]
        return args

    def discover_by_ip(self, ip, port=default_port):
        '''
        @return: The names of the targets offered at ip:port.
        '''
        result = self._iscsiadm(
            ['-m', 'discovery', '-t', 'sendtargets', '-p', _portal(ip, port)],
            f"Discovery on {_portal(ip, port)} failed")
        return [target for (_, target) in parse_portal_lines(result.stdout)]

    def list_records(self):
        '''
        @return: A list of (portal, target) node records.
        '''
        result = self._iscsiadm(['-m', 'node'], "Could not list node records",
                                success=(ISCSI_ERR_NO_OBJS_FOUND,))
        return parse_portal_lines(result.stdout)

    def login_target(self, target, ip=None, port=default_port):
        self._iscsiadm(self._node_args(target, ip, port) + ['--login'],
                       f"Login to {target} failed",
                       success=(ISCSI_ERR_SESS_EXISTS,))

    def logout_target(self, target, ip=None, port=default_port):
        self._iscsiadm(self._node_args(target, ip, port) + ['--logout'],
                       f"Logout from {target} failed",
                       success=(ISCSI_ERR_NO_OBJS_FOUND,))

    def logout_all_by_ip(self, ip, port=default_port):
        self._iscsiadm(['-m', 'node', '-p', _portal(ip, port), '--logout'],
                       f"Logout from {_portal(ip, port)} failed",
                       success=(ISCSI_ERR_NO_OBJS_FOUND,))

    def get_block_device_of_target(self, target, ip, port=default_port):
        '''
        @return: A dict of LUN number to the block device (i.e. /dev/sdc)
        of the logged in target, resolved from its by-path links.
        '''
        prefix = f"ip-{_portal(ip, port)}-iscsi-{target}-lun-"
        devices = {}
        for link in self._tree.glob(f"{by_path_dir}/{prefix}*"):
            lun = os.path.basename(link)[len(prefix):]
            if lun.isdigit():
                devices[int(lun)] = self._tree.realpath(link)
        return devices

    def clear_discovery_entry(self, ip, port=default_port):
        self._iscsiadm(['-m', 'discoverydb', '-t', 'sendtargets',
                        '-p', _portal(ip, port), '-o', 'delete'],
                       f"Could not delete discovery record {_portal(ip, port)}",
                       success=(ISCSI_ERR_IDBM, ISCSI_ERR_NO_OBJS_FOUND))
