'''
Filtering and writing of the persisted target configuration.

The document is the one targetctl saves and restores:

    {"storage_objects": [{"plugin": "block", "name": ..., "dev": ...}, ...],
     "targets": [{"wwn": ..., "tpgs": [{"luns": [{"storage_object":
                  "/backstores/block/<name>", ...}], ...}], ...}, ...]}

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
from pathlib import Path

from .utils import LIOTargetError

log = logging.getLogger(__name__)

default_save_file = '/etc/rtslib-fb-target/saveconfig.json'


def storage_object_id(storage_object):
    '''
    >>> storage_object_id({'plugin': 'block', 'name': '0a1b2c3d'})
    '/backstores/block/0a1b2c3d'
    '''
    plugin = storage_object.get('plugin', 'block')
    return f"/backstores/{plugin}/{storage_object['name']}"


def strip_unpersisted(config, is_temporary_target, is_unpersisted_backstore):
    '''
    Removes everything that must not survive a reboot from a configuration
    dump: storage objects for which is_unpersisted_backstore(so) is true,
    targets for which is_temporary_target(wwn) is true, and LUNs of the
    remaining targets that referenced a removed storage object. A target
    whose LUNs were all removed that way is dropped too; a target which
    never had any LUN is kept.

    @param config: The decoded configuration. It is modified in place.
    @type config: dict
    @return: config
    '''
    removed = set()
    kept_objects = []
    for storage_object in config.get('storage_objects', []):
        if is_unpersisted_backstore(storage_object):
            removed.add(storage_object_id(storage_object))
        else:
            kept_objects.append(storage_object)
    config['storage_objects'] = kept_objects

    kept_targets = []
    for target in config.get('targets', []):
        if is_temporary_target(target.get('wwn', '')):
            continue

        tpgs = target.get('tpgs') or []
        if tpgs and tpgs[0].get('luns'):
            luns = [lun for lun in tpgs[0]['luns']
                    if lun.get('storage_object') not in removed]
            tpgs[0]['luns'] = luns
            if len(tpgs) == 1 and not luns:
                log.debug("Dropping %s: all its LUNs are unpersisted", target.get('wwn'))
                continue

        kept_targets.append(target)
    config['targets'] = kept_targets

    return config


def read_config(path):
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise LIOTargetError(f"Could not read target configuration {path}") from e


def write_config(config, save_file=default_save_file):
    '''
    Atomically replaces save_file with config, mode 0600.
    '''
    save_file = Path(save_file)
    tmp_file = save_file.with_name(f"{save_file.name}.temp")

    mode = 0o600  # rw-------
    umask = 0o777 ^ mode

    # For security, remove file with potentially elevated mode
    tmp_file.unlink(missing_ok=True)

    original_umask = os.umask(umask)
    try:
        with tmp_file.open(mode="x") as f:
            json.dump(config, f, sort_keys=True, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise LIOTargetError(f"Could not write {tmp_file}") from e
    finally:
        os.umask(original_umask)

    tmp_file.replace(save_file)
    save_file.chmod(mode)
