'''
Wrappers around the targetcli and targetctl command line tools.

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
import re

from .lock import process_lock
from .tree import ResourceTree
from .utils import check, run

log = logging.getLogger(__name__)

targetcli = 'targetcli'
targetctl = 'targetctl'
targetctl_timeout = 300

iscsi_path = '/iscsi'
backstores_path = '/backstores'

access_block = 'block'
access_fileio = 'fileio'

_auth_line = re.compile(r'^([a-zA-Z_-]+)=(.*)$')


def tpg_path(target):
    return f"{iscsi_path}/{target}/tpg1"

def _bool(value):
    return 'true' if value else 'false'

def parse_auth_output(output):
    '''
    Turns the output of "get auth" into a dict.

    >>> sorted(parse_auth_output("AUTH CONFIG GROUP\\nuserid=bob\\npassword=\\n").items())
    [('password', ''), ('userid', 'bob')]
    '''
    parameters = {}
    for line in output.splitlines():
        match = _auth_line.match(line.strip())
        if match:
            parameters[match.group(1)] = match.group(2)
    return parameters


class Targetcli:
    '''
    Mutates configfs through targetcli(8).

    Every invocation holds the configfs lock, and raises ToolFailureError
    when the tool exits non-zero.
    '''

    def __init__(self, runner=run, lock=None, tree=None):
        self._run = runner
        self._lock = lock if lock is not None else process_lock()
        self._tree = tree if tree is not None else ResourceTree()

    def _invoke(self, args, message):
        argv = [targetcli] + list(args)
        with self._lock.held():
            result = self._run(argv)
        check(result, message)
        log.debug("%s", ' '.join(argv))
        return result

    def access_type(self, path):
        '''
        @return: "block" for block devices, "fileio" for anything else.
        '''
        if self._tree.is_block_device(path):
            return access_block
        return access_fileio

    def create_target(self, target):
        self._invoke([iscsi_path, 'create', target],
                     f"Failed to create iSCSI target {target}")

    def delete_target(self, target):
        self._invoke([iscsi_path, 'delete', target],
                     f"Failed to delete iSCSI target {target}")

    def create_backstore(self, target, name, path, read_only=False,
                         write_back=False, wwn=None, attributes=None):
        '''
        Creates a block or fileio backstore for path.

        A read-only fileio backstore cannot be write-protected on its own,
        so the whole portal group of target is made read-only instead.

        @return: The backstore's targetcli path, /backstores/<kind>/<name>.
        '''
        kind = self.access_type(path)
        args = [f"{backstores_path}/{kind}", 'create', f"name={name}"]
        if kind == access_block:
            args += [f"dev={path}", f"readonly={_bool(read_only)}"]
        else:
            if read_only:
                self.set_tpg_attributes(tpg_path(target),
                                        {'demo_mode_write_protect': 1})
            args += [f"file_or_dev={path}", f"write_back={_bool(write_back)}",
                     'sparse=true']
        if wwn:
            args.append(f"wwn={wwn}")

        self._invoke(args, f"Failed to create backstore {name} for iSCSI target {target}")

        backstore = f"{backstores_path}/{kind}/{name}"
        if attributes:
            self.set_backstore_attributes(backstore, attributes)
        return backstore

    def delete_backstore(self, name, path, target='[UNKNOWN]'):
        kind = self.access_type(path)
        self._invoke([f"{backstores_path}/{kind}", 'delete', name],
                     f"Failed to delete backstore {name} for iSCSI target {target}")

    def create_lun(self, target, backstore):
        self._invoke([f"{tpg_path(target)}/luns", 'create', backstore],
                     f"Failed to activate LUN for target {target}")

    def _set(self, path, group, values, what):
        pairs = [f"{key}={value}" for key, value in values.items()]
        self._invoke([path, 'set', group] + pairs,
                     f"Failed to set {what} for {path} with {' '.join(pairs)}")

    def set_tpg_attributes(self, tpg, attributes):
        self._set(tpg, 'attribute', attributes, 'target attributes')

    def set_tpg_parameters(self, tpg, parameters):
        self._set(tpg, 'parameter', parameters, 'target parameters')

    def set_tpg_auth(self, tpg, parameters):
        self._set(tpg, 'auth', parameters, 'target auth parameters')

    def set_backstore_attributes(self, backstore, attributes):
        self._set(backstore, 'attribute', attributes, 'backstore attributes')

    def get_tpg_auth(self, tpg):
        result = self._invoke([tpg, 'get', 'auth'],
                              f"Failed to get target auth parameters for {tpg}")
        return parse_auth_output(result.stdout)

    def set_tpg_state(self, tpg, enabled):
        command = 'enable' if enabled else 'disable'
        self._invoke([tpg, command], f"Failed to {command} tpg for {tpg}")


class Targetctl:
    '''
    Bulk dump, restore and clear of the kernel target configuration.
    '''

    def __init__(self, runner=run, lock=None):
        self._run = runner
        self._lock = lock if lock is not None else process_lock()

    def _invoke(self, args, message):
        with self._lock.held():
            result = self._run([targetctl] + list(args), timeout=targetctl_timeout)
        return check(result, message)

    def save(self, path):
        self._invoke(['save', path], f"Failed to save target configuration to {path}")

    def restore(self, path):
        self._invoke(['restore', path], f"Failed to restore target configuration from {path}")

    def clear(self):
        self._invoke(['clear'], "Failed to clear target configuration")
