'''
Loop devices wrapping backing files.

LIO's fileio backend limits I/O to 8MB chunks, smaller than what agents
send, so regular files are exported through a loop device and an iblock
backstore instead.

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

import json
import logging
import os
import time

from .tree import ResourceTree
from .utils import LIOTargetError, ToolFailureError, check, run

log = logging.getLogger(__name__)

losetup = 'losetup'
detach_checks = 5
detach_check_interval = 1


def is_loop_device_path(path):
    '''
    >>> is_loop_device_path('/dev/loop3')
    True
    >>> is_loop_device_path('/dev/sdb')
    False
    '''
    return path.startswith('/dev/loop')


class LoopDevice:
    '''
    A loop device and the file it is attached to.
    '''

    def __init__(self, path, backing_file):
        self.path = path
        self.backing_file = backing_file

    def __repr__(self):
        return f"<LoopDevice {self.path} -> {self.backing_file}>"

    def __eq__(self, other):
        return (isinstance(other, LoopDevice)
                and (self.path, self.backing_file) == (other.path, other.backing_file))

    def __hash__(self):
        return hash((self.path, self.backing_file))


class LoopManager:
    '''
    Creates, lists and destroys loop devices with losetup(8).
    '''

    def __init__(self, runner=run, tree=None, sleep=time.sleep):
        self._run = runner
        self._tree = tree if tree is not None else ResourceTree()
        self._sleep = sleep

    def create(self, path):
        '''
        Attaches path to the first free loop device.
        @return: The new LoopDevice.
        '''
        backing_file = self._tree.realpath(path)
        if not self._tree.exists(backing_file):
            raise LIOTargetError(f"Cannot create a loop device for missing file {path}")

        result = check(self._run([losetup, '--show', '--find', backing_file]),
                       f"Loop creation failed for {backing_file}")
        loop = LoopDevice(result.stdout.strip(), backing_file)
        log.debug("Attached %s to %s", loop.backing_file, loop.path)
        return loop

    def destroy(self, loop):
        '''
        Detaches the loop device and waits for it to go away.
        @raises: LIOTargetError if it is still attached afterwards.
        '''
        if not self.exists(loop.path):
            log.warning("Trying to delete nonexistent loop device %s", loop.path)
            return

        result = self._run([losetup, '--detach', loop.path])
        if not result.ok:
            log.error("Error detaching loop device %s: %s",
                      loop.path, result.error_output)

        for attempt in range(detach_checks):
            if not self.exists(loop.path):
                log.info("Destroyed loop device %s (%s)", loop.path, loop.backing_file)
                return
            if attempt < detach_checks - 1:
                self._sleep(detach_check_interval)

        raise LIOTargetError(f"Timed out detaching loop device {loop.path} "
                             f"with backing file {loop.backing_file}")

    def _list(self, extra_args):
        result = check(self._run([losetup, '--list', '--json'] + extra_args),
                       "Could not list loop devices")
        if not result.stdout.strip():
            return []
        try:
            devices = json.loads(result.stdout).get('loopdevices', [])
        except (ValueError, AttributeError) as e:
            raise ToolFailureError(
                f"Unexpected {losetup} output: {result.stdout.strip()!r}", result) from e
        return [LoopDevice(device.get('name', ''), device.get('back-file') or '')
                for device in devices]

    def loops(self):
        return self._list([])

    def loops_on_file(self, path):
        '''
        @return: Every loop device attached to path; empty if path does not
        exist.
        '''
        if not self._tree.exists(path):
            return []
        return self._list(['--associated', self._tree.realpath(path)])

    def exists(self, path):
        return any(loop.path == path for loop in self.loops())

    def backing_file(self, path):
        '''
        @return: The file path is attached to, or '' if it is not a loop.
        '''
        result = self._run([losetup, '--list', '--output', 'BACK-FILE',
                            '--noheadings', path])
        if not result.ok:
            return ''
        return result.stdout.strip()

    def loop_info(self, path):
        backing_file = self.backing_file(path)
        if not backing_file:
            raise LIOTargetError(f"{path} is not an attached loop device")
        return LoopDevice(path, backing_file)
