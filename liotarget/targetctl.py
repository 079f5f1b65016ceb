#!/usr/bin/python3
'''
liotargetctl

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

#
# Saves, restores and clears the persisted LIO configuration, keeping the
# "configuration restored" flag in step with it
#

import logging
import os
import sys
from pathlib import Path

from liotarget.config import default_save_file
from liotarget.target import TargetStore
from liotarget.utils import LIOTargetError

err = sys.stderr

def usage(prog):
    print(f"syntax: {prog} save [file_to_save_to]\n"
          f"        {prog} restore [file_to_restore_from]\n"
          f"        {prog} clear\n"
          f"        {prog} list\n"
          f"default file is: {default_save_file}", file=err)
    sys.exit(-1)

def save(store):
    if not store.save_configuration():
        print("LIO configuration has not been restored yet, not saving", file=err)
        sys.exit(1)

def restore(store):
    if not Path(store.save_file).exists():
        # Not an error if the restore file is not present
        print(f"No saved config file at {store.save_file}, ok")
        store.mark_configuration_restored()
        return
    store.restore_configuration()

def clear(store):
    store.clear_configuration()

def list_targets(store):
    for target in store.list_targets():
        print(target)
        for lun, path in sorted(store.list_target_luns(target).items()):
            print(f"  lun{lun}: {path}")

funcs = {"save": save, "restore": restore, "clear": clear, "list": list_targets}

def main(argv=None):
    argv = sys.argv if argv is None else argv

    if os.geteuid() != 0:
        print("Must run as root", file=err)
        sys.exit(-1)

    if len(argv) < 2 or len(argv) > 3:
        usage(argv[0])

    if argv[1] == "--help":
        usage(argv[0])

    if argv[1] not in funcs:
        usage(argv[0])

    logging.basicConfig(level=logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")

    savefile = default_save_file
    if len(argv) == 3:
        savefile = str(Path(argv[2]).expanduser())

    try:
        funcs[argv[1]](TargetStore(save_file=savefile))
    except LIOTargetError as e:
        print(e, file=err)
        sys.exit(1)

if __name__ == "__main__":
    main()
