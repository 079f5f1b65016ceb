'''
Volatile "configuration restored" marker.

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

import os
import time

from .utils import fread, fwrite

restored_flag_file = '/dev/shm/liotarget/lioConfigRestored'


class RestoredFlag:
    '''
    A key file living on tmpfs, so that it disappears on reboot. Its
    presence means the persisted target configuration has been loaded back
    into the kernel and may safely be overwritten.
    '''

    def __init__(self, path=restored_flag_file, clock=time.time):
        self.path = path
        self._clock = clock

    def __repr__(self):
        return f"<RestoredFlag {self.path}>"

    def set(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fwrite(self.path, int(self._clock()))

    def clear(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def is_set(self):
        return os.path.isfile(self.path)

    def timestamp(self):
        '''
        @return: The time the flag was set, or None if it is not set.
        '''
        try:
            return int(fread(self.path))
        except (FileNotFoundError, ValueError):
            return None
