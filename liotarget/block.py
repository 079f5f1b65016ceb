'''
Block device lookups through udev.

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

import pyudev

from .tree import ResourceTree

log = logging.getLogger(__name__)


class BlockDevices:
    '''
    Finds device-mapper (dm-crypt) devices stacked on top of loop devices.
    '''

    def __init__(self, context=None, tree=None):
        self._context = context
        self._tree = tree if tree is not None else ResourceTree()

    def _get_context(self):
        if self._context is None:
            self._context = pyudev.Context()
        return self._context

    def _dm_devices(self):
        for device in self._get_context().list_devices(subsystem='block'):
            if device.sys_name.startswith('dm-'):
                yield device

    def _slave_backing_files(self, device):
        slaves_dir = os.path.join(device.sys_path, 'slaves')
        for slave in self._tree.glob(os.path.join(slaves_dir, 'loop*')):
            backing_file = os.path.join(slave, 'loop', 'backing_file')
            try:
                yield self._tree.read(backing_file)
            except OSError:
                log.debug("No backing file for %s", slave)

    def dm_crypt_devices_for_file(self, image, full_path=False):
        '''
        @param image: Path of the image file the loop device wraps.
        @param full_path: Return /dev/dm-N nodes instead of mapper names.
        @return: List of device-mapper devices whose slave loop device is
        backed by image.
        '''
        devices = []
        for device in self._dm_devices():
            if image not in self._slave_backing_files(device):
                continue
            if full_path:
                devices.append(device.device_node or f"/dev/{device.sys_name}")
            else:
                try:
                    devices.append(device.attributes.asstring('dm/name'))
                except KeyError:
                    log.warning("Device-mapper device %s has no name", device.sys_name)
        return devices
