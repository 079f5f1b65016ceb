'''
Read access to the kernel resource trees (configfs, sysfs, /dev).

Everything that inspects live kernel state goes through a ResourceTree so
that it can be pointed at an in-memory tree.

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

import glob
import os
import stat

from .utils import fread


class ResourceTree:
    '''
    Reads the real filesystem.
    '''

    def glob(self, pattern, only_dirs=False):
        '''
        @param pattern: A shell-style pattern.
        @param only_dirs: Only return directories.
        @return: Sorted list of matching paths.
        '''
        paths = glob.glob(pattern)
        if only_dirs:
            paths = [path for path in paths if os.path.isdir(path)]
        return sorted(paths)

    def read(self, path):
        '''
        @return: The stripped contents of a small text file.
        @raises: OSError if it cannot be read.
        '''
        return fread(path)

    def exists(self, path):
        return os.path.exists(path)

    def is_file(self, path):
        return os.path.isfile(path)

    def is_block_device(self, path):
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def realpath(self, path):
        return os.path.realpath(path)
