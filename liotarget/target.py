'''
Implements the lifecycle of locally hosted LIO iSCSI targets.

Live state is read straight from configfs and mutated through targetcli.
The following assumptions hold for every target managed here:
 - a target has exactly one TPG, tpgt_1
 - there is at most one CHAP user per direction, set TPG-wide
   (multiple users would need ACL-level authentication)
 - LUN ids are assigned by the kernel

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
import re
import socket

from . import agent as agent_files
from .block import BlockDevices
from .config import default_save_file, read_config, strip_unpersisted, write_config
from .lock import process_lock
from .loop import LoopDevice, LoopManager, is_loop_device_path
from .state import RestoredFlag
from .targetcli import Targetcli, Targetctl, tpg_path
from .tree import ResourceTree
from .utils import (InconsistentStateError, LIOTargetError, TargetExistsError,
                    TargetNotFoundError, ToolFailureError,
                    UnexpectedLunCountError, basename_without, fnv1a32,
                    ignored)

log = logging.getLogger(__name__)

configfs_dir = '/sys/kernel/config/target'
sys_block_dir = '/sys/block'

iqn_date = '2007-01'
default_naming_authority = 'net.appliance.dev'
temporary_marker = 'temp'
default_prefix = 'agent'

temporary_suffix = '_temp'
restore_dir_suffix = '-iscsimnt'
min_chap_password_length = 12

tpg_parameters = {
    'DataDigest': 'None',
    'FirstBurstLength': 262144,
    'HeaderDigest': 'None',
    'InitialR2T': 'No',
    'MaxBurstLength': 524288,
    'MaxRecvDataSegmentLength': 262144,
}

tpg_attributes = {
    'default_cmdsn_depth': 32,
    'demo_mode_write_protect': 0,
    # demo mode: any initiator may log in without an ACL
    'generate_node_acls': 1,
}

_guid = re.compile(r'([0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12})[^/]*$',
                   re.IGNORECASE)


class UserType:
    '''
    Direction of a CHAP credential. INCOMING authenticates the initiator,
    OUTGOING authenticates the target (mutual CHAP).
    '''
    INCOMING = 'incoming'
    OUTGOING = 'outgoing'

    all = (INCOMING, OUTGOING)

auth_parameter_keys = {
    UserType.INCOMING: ('userid', 'password'),
    UserType.OUTGOING: ('mutual_userid', 'mutual_password'),
}


def backstore_name(path, temporary=False):
    '''
    Short deterministic name for the backstore of path. It must fit the 16
    bytes of the INQUIRY model field, or the kernel truncates it.

    >>> backstore_name('/data/vol1.datto') == backstore_name('/data/vol1')
    True
    >>> backstore_name('/data/vol1.datto', temporary=True).endswith('_temp')
    True
    '''
    parent = os.path.basename(os.path.dirname(path))
    short_name = basename_without(path, agent_files.image_suffix)
    name = fnv1a32(f"{parent}_{short_name}")
    if temporary:
        name += temporary_suffix
    return name


class TargetStore:
    '''
    Targets, LUNs, backstores and CHAP credentials of this host, and the
    persisted configuration they are saved to.

    Collaborators default to the real system; every one of them can be
    passed in instead.
    '''

    def __init__(self, hostname=None, naming_authority=default_naming_authority,
                 configfs_dir=configfs_dir, save_file=default_save_file,
                 tree=None, targetcli=None, targetctl=None, loops=None,
                 block_devices=None, lock=None, restored_flag=None):
        self.hostname = hostname if hostname is not None else socket.gethostname()
        self.naming_authority = naming_authority
        self.configfs_dir = configfs_dir
        self.save_file = save_file
        self._lock = lock if lock is not None else process_lock()
        self._tree = tree if tree is not None else ResourceTree()
        self._targetcli = targetcli if targetcli is not None \
            else Targetcli(lock=self._lock, tree=self._tree)
        self._targetctl = targetctl if targetctl is not None \
            else Targetctl(lock=self._lock)
        self._loops = loops if loops is not None else LoopManager(tree=self._tree)
        self._block = block_devices if block_devices is not None \
            else BlockDevices(tree=self._tree)
        self._restored = restored_flag if restored_flag is not None else RestoredFlag()

    def __repr__(self):
        return f"<TargetStore {self.hostname}>"

    def _get_iscsi_dir(self):
        return f"{self.configfs_dir}/iscsi"

    def _get_core_dir(self):
        return f"{self.configfs_dir}/core"

    iscsi_dir = property(_get_iscsi_dir,
            doc="Get the configfs directory holding the iSCSI targets.")
    core_dir = property(_get_core_dir,
            doc="Get the configfs directory holding the backstores.")

    # Naming

    def make_target_name(self, label, prefix=default_prefix):
        '''
        @return: iqn.2007-01.<authority>.<hostname>:<prefix><label>.
        Underscores are not allowed in IQNs (RFC 3722) and become hyphens.
        '''
        return self._make_name(self.naming_authority, label, prefix)

    def make_temporary_target_name(self, label, prefix=default_prefix):
        '''
        Like make_target_name(), for a target that is never saved.
        '''
        return self._make_name(f"{self.naming_authority}.{temporary_marker}",
                               label, prefix)

    def _make_name(self, authority, label, prefix):
        name = f"iqn.{iqn_date}.{authority}.{self.hostname.lower()}:{prefix}{label.lower()}"
        return name.replace('_', '-')

    def is_target_temporary(self, target):
        return f"{self.naming_authority}.{temporary_marker}." in target

    # Discovery

    def list_targets(self):
        '''
        @return: The IQNs of all targets in configfs.
        '''
        return [os.path.basename(path) for path in
                self._tree.glob(f"{self.iscsi_dir}/iqn.*", only_dirs=True)]

    def target_exists(self, target):
        try:
            return self._check_target(target)
        except TargetNotFoundError:
            return False

    def _check_target(self, target):
        if target not in self.list_targets():
            raise TargetNotFoundError(
                f"Target \"{target}\" does not exist. Please create it first.")
        return True

    def _read_udev_path(self, udev_path_file):
        try:
            return self._tree.read(udev_path_file)
        except OSError as e:
            log.warning("Could not read %s: %s", udev_path_file, e)
            return None

    def _search_paths(self, path):
        '''
        path itself and every device stacked on it: dm-crypt devices (both
        as /dev/dm-N and /dev/mapper/<name>) and loop devices.
        '''
        paths = [path]
        paths += self._block.dm_crypt_devices_for_file(path, full_path=True)
        paths += [f"/dev/mapper/{name}"
                  for name in self._block.dm_crypt_devices_for_file(path)]
        paths += [loop.path for loop in self._loops.loops_on_file(path)]
        return paths

    def get_targets_by_path(self, path):
        '''
        @return: IQNs of the targets with a LUN backed by path, directly or
        through a loop or dm-crypt device.
        '''
        search_paths = self._search_paths(path)
        targets = []
        with self._lock.held():
            for udev_path_file in self._tree.glob(
                    f"{self.iscsi_dir}/iqn*/tpgt_1/lun/lun_*/*/udev_path"):
                if self._read_udev_path(udev_path_file) not in search_paths:
                    continue
                target = os.path.relpath(udev_path_file, self.iscsi_dir).split('/')[0]
                if target not in targets:
                    targets.append(target)
        return targets

    def get_backstores_by_path(self, path):
        '''
        @return: The devices (as found in their udev_path) of the backstores
        backed by path, directly or through a loop or dm-crypt device.
        '''
        search_paths = self._search_paths(path)
        backstores = []
        with self._lock.held():
            for udev_path_file in self._tree.glob(f"{self.core_dir}/*/*/udev_path"):
                device = self._read_udev_path(udev_path_file)
                if device in search_paths and device not in backstores:
                    backstores.append(device)
        return backstores

    def list_target_luns(self, target):
        '''
        @return: A dict of LUN id to the path backing it.
        '''
        self._check_target(target)
        luns = {}
        lun_dir = f"{self.iscsi_dir}/{target}/tpgt_1/lun"
        with self._lock.held():
            for udev_path_file in self._tree.glob(f"{lun_dir}/lun_*/*/udev_path"):
                lun = os.path.relpath(udev_path_file, lun_dir).split('/')[0]
                try:
                    lun_id = int(lun[len('lun_'):])
                except ValueError:
                    continue
                device = self._read_udev_path(udev_path_file)
                if device is not None:
                    luns[lun_id] = device
        return luns

    def get_block_backstore_map(self):
        '''
        @return: A dict of iblock backstore device to backstore name.
        '''
        block_map = {}
        with self._lock.held():
            for udev_path_file in self._tree.glob(f"{self.core_dir}/iblock_*/*/udev_path"):
                device = self._read_udev_path(udev_path_file)
                if device is not None:
                    block_map[device] = os.path.basename(os.path.dirname(udev_path_file))
        return block_map

    def get_session_count(self, target):
        sessions = f"{self.iscsi_dir}/{target}/fabric_statistics/iscsi_instance/sessions"
        with self._lock.held():
            if not self._tree.exists(f"{self.iscsi_dir}/{target}"):
                return 0
            return int(self._tree.read(sessions))

    def list_target_volume_guids(self, target):
        '''
        @return: A dict of LUN id to the GUID of the agent volume it exports.
        '''
        guids = {}
        for lun, path in self.list_target_luns(target).items():
            if is_loop_device_path(path):
                guids[lun] = self._guid_from_loop(path)
            else:
                guids[lun] = self._guid_from_mapper(path)
        return guids

    def _guid_from_loop(self, loop):
        backing_file = self._loops.backing_file(loop)
        if not backing_file:
            raise LIOTargetError(f"Unable to get target guid for {loop}")
        return os.path.splitext(os.path.basename(backing_file))[0]

    def _guid_from_mapper(self, mapper):
        match = _guid.search(mapper)
        if not match:
            raise LIOTargetError(f"Unable to get target guid for {mapper}")
        return match.group(1)

    # Targets

    def create_target(self, target):
        '''
        Creates target with the default TPG parameters and attributes.
        @return: The target name actually used, underscores replaced.
        @raises: TargetExistsError if it already exists.
        '''
        target = target.replace('_', '-')
        with self._lock.held():
            if self.target_exists(target):
                raise TargetExistsError(
                    f"Target \"{target}\" already exists. Please delete it first.")

            self._targetcli.create_target(target)

            try:
                self._targetcli.set_tpg_parameters(tpg_path(target), tpg_parameters)
            except ToolFailureError as e:
                log.error("Deleting target %s due to error: %s", target, e)
                self.delete_target(target)
                raise LIOTargetError("Failed to set target parameters") from e

            try:
                self._targetcli.set_tpg_attributes(tpg_path(target), tpg_attributes)
            except ToolFailureError as e:
                log.error("Deleting target %s due to error: %s", target, e)
                self.delete_target(target)
                raise LIOTargetError("Failed to set target attributes") from e

        return target

    def delete_target(self, target):
        '''
        Closes the sessions of target, deletes the backstores of all its
        LUNs (and their loop devices), then the target itself.
        @raises: TargetNotFoundError if there is no such target.
        '''
        with self._lock.held():
            self._check_target(target)
            self.close_sessions_on_target(target)

            temporary = self.is_target_temporary(target)
            for path in self.list_target_luns(target).values():
                self._delete_backstore(path, temporary, target)

            self._targetcli.delete_target(target)

    def close_sessions_on_target(self, target):
        '''
        Kills all connections by disabling the TPG.
        @return: False if that failed.
        '''
        try:
            self._targetcli.set_tpg_state(tpg_path(target), False)
        except ToolFailureError as e:
            log.error("Failed to disable TPG of %s: %s", target, e)
            return False
        return True

    def allow_sessions_on_target(self, target):
        '''
        Enables the TPG again.
        @return: False if that failed.
        '''
        try:
            self._targetcli.set_tpg_state(tpg_path(target), True)
        except ToolFailureError as e:
            log.error("Failed to enable TPG of %s: %s", target, e)
            return False
        return True

    # LUNs and backstores

    def add_lun(self, target, path, read_only=False, write_back=False,
                wwn=None, backstore_attributes=None):
        '''
        Exports path as a new LUN of target. Regular files are wrapped in a
        loop device first.

        @param read_only: For a file this makes the whole TPG read-only.
        @param write_back: Enable write-back caching instead of write-through.
        @param wwn: Unit serial reported for the LUN.
        @param backstore_attributes: Attributes to set on the backstore.
        @return: The id of the new LUN.
        @raises: UnexpectedLunCountError unless exactly one LUN appeared.
        '''
        with self._lock.held():
            self._check_target(target)
            temporary = self.is_target_temporary(target)

            backstore, device = self._create_backstore(
                target, path, read_only, write_back, wwn,
                backstore_attributes, temporary)

            luns_before = set(self.list_target_luns(target))
            try:
                self._targetcli.create_lun(target, backstore)
            except ToolFailureError as e:
                log.error("Deleting backstore of %s due to error: %s", path, e)
                self._delete_backstore(device, temporary, target)
                raise LIOTargetError("Failed to activate LUN") from e
            new_luns = set(self.list_target_luns(target)) - luns_before

        if len(new_luns) != 1:
            raise UnexpectedLunCountError(
                f"Unexpected new LUN count for {target}: {sorted(new_luns)}")
        return new_luns.pop()

    def _create_backstore(self, target, path, read_only, write_back, wwn,
                          attributes, temporary):
        '''
        @return: (targetcli backstore path, device backing it)
        '''
        is_file = self._tree.is_file(path)
        if not is_file and not self._tree.is_block_device(path):
            raise LIOTargetError(
                f"Refusing to create a backstore with a path ({path}) that is "
                "neither a regular file nor block device nor symlink to one of the above.")

        name = backstore_name(path, temporary)
        loop = self._loops.create(path) if is_file else None
        device = loop.path if loop else path

        def create():
            return self._targetcli.create_backstore(
                target, name, device, read_only, write_back, wwn, attributes)

        try:
            return create(), device
        except ToolFailureError as e:
            if self._is_backstore_in_use(path):
                self._discard_loop(loop)
                raise LIOTargetError(f"Failed to create backstore \"{path}\"") from e
            log.info("Deleting orphaned backstore %s and trying again: %s", name, e)

        retried = False
        try:
            self._delete_stale_backstore(name, device, target)
            retried = True
            return create(), device
        except LIOTargetError as e:
            if retried:
                self._delete_created_backstore(name, device, target)
            self._discard_loop(loop)
            raise LIOTargetError(f"Failed to create backstore \"{path}\"") from e

    def _delete_created_backstore(self, name, device, target):
        '''
        Deletes the backstore called name on device left behind by a
        creation that failed half way, i.e. while setting attributes.
        '''
        for udev_path_file in self._tree.glob(f"{self.core_dir}/*/{name}/udev_path"):
            if self._read_udev_path(udev_path_file) != device:
                continue
            try:
                self._targetcli.delete_backstore(name, device, target)
            except ToolFailureError as e:
                log.error("Could not delete half-created backstore %s: %s", name, e)

    def _discard_loop(self, loop):
        if loop is not None:
            self._loops.destroy(loop)

    def _is_backstore_in_use(self, path):
        '''
        True if a LUN of any target is backed by path or a device on it.
        '''
        search_paths = self._search_paths(path)
        with self._lock.held():
            for udev_path_file in self._tree.glob(
                    f"{self.iscsi_dir}/*/tpgt_1/lun/lun_*/*/udev_path"):
                if self._read_udev_path(udev_path_file) in search_paths:
                    return True
        return False

    def _delete_stale_backstore(self, name, device, target):
        '''
        Deletes whatever backstore is already called name, and the loop
        device it was using unless that is device.
        '''
        for udev_path_file in self._tree.glob(f"{self.core_dir}/*/{name}/udev_path"):
            stale_device = self._read_udev_path(udev_path_file) or device
            stale_loop = None
            if is_loop_device_path(stale_device) and stale_device != device:
                backing_file = self._loops.backing_file(stale_device)
                if backing_file:
                    stale_loop = LoopDevice(stale_device, backing_file)
            self._targetcli.delete_backstore(name, stale_device, target)
            if stale_loop is not None:
                self._loops.destroy(stale_loop)

    def _delete_backstore(self, path, temporary, target='[UNKNOWN]'):
        '''
        Deletes the backstore of path and, if path is a loop device, the
        loop device too. The name is worked out from the loop's backing
        file, unless the iblock map says the loop belongs to a differently
        named backstore: that backstore is deleted and the loop left alone.

        @return: False if no backstore could be found for a loop device.
        '''
        loop_backing_file = ''
        if is_loop_device_path(path):
            name = ''
            try:
                loop_backing_file = self._tree.read(
                    f"{sys_block_dir}/{os.path.basename(path)}/loop/backing_file")
                name = backstore_name(loop_backing_file, temporary)
            except OSError as e:
                log.warning("Loop device %s does not exist: %s", path, e)

            block_map = self.get_block_backstore_map()
            if path in block_map and block_map[path] != name:
                loop_backing_file = ''
                name = block_map[path]
                log.warning("Loop %s will not be deleted because it is not "
                            "associated with backstore %s", path, name)
            if not name:
                log.warning("Can't find backstore for loop %s", path)
                return False
        else:
            name = backstore_name(path, temporary)

        self._targetcli.delete_backstore(name, path, target)

        if loop_backing_file:
            # several loops may share the backing file
            for loop in self._loops.loops_on_file(loop_backing_file):
                if loop.path == path:
                    self._loops.destroy(loop)
        return True

    def remove_agent_entities(self, agent):
        '''
        Deletes every target and backstore built on the images of the
        included volumes of agent, and the backstores of their checksum
        files.
        '''
        with self._lock.held():
            for volume in agent.included_volumes():
                base_path = agent.volume_base_path(volume)
                volume_path = base_path + agent_files.encrypted_image_suffix
                if not self._tree.exists(volume_path):
                    volume_path = base_path + agent_files.image_suffix
                checksum_path = base_path + agent_files.checksum_suffix

                if self._tree.exists(volume_path):
                    for target in self.get_targets_by_path(volume_path):
                        self.delete_target(target)
                    for backstore in self.get_backstores_by_path(volume_path):
                        self._delete_backstore(backstore, True)

                if self._tree.exists(checksum_path):
                    for backstore in self.get_backstores_by_path(checksum_path):
                        self._delete_backstore(backstore, True)

    # CHAP

    def _get_auth(self, target):
        return self._targetcli.get_tpg_auth(tpg_path(target))

    def _set_auth(self, target, parameters):
        try:
            self._targetcli.set_tpg_auth(tpg_path(target), parameters)
        except ToolFailureError as e:
            raise LIOTargetError(
                f"Failed to set auth parameters {', '.join(parameters)} for {target}") from e

    def _set_tpg_authentication(self, target, enabled):
        try:
            self._targetcli.set_tpg_attributes(tpg_path(target),
                                               {'authentication': int(enabled)})
        except ToolFailureError as e:
            raise LIOTargetError(
                f"Failed to {'enable' if enabled else 'disable'} authentication for {target}") from e

    @staticmethod
    def _auth_keys(user_type):
        try:
            return auth_parameter_keys[user_type]
        except KeyError:
            raise LIOTargetError(f"Unexpected user type {user_type!r}") from None

    def list_chap_users(self, target, parameters=None):
        '''
        @return: A dict of UserType to user name, holding only the
        directions that have a user.
        '''
        if parameters is None:
            self._check_target(target)
            parameters = self._get_auth(target)

        users = {}
        for user_type in UserType.all:
            user = parameters.get(self._auth_keys(user_type)[0], '')
            if user and user != 'NULL':
                users[user_type] = user
        return users

    def get_chap_users(self, target):
        '''
        @return: A dict of UserType to (user, password).
        '''
        self._check_target(target)
        parameters = self._get_auth(target)
        credentials = {}
        for user_type, user in self.list_chap_users(target, parameters).items():
            password_key = self._auth_keys(user_type)[1]
            credentials[user_type] = (user, parameters.get(password_key, ''))
        return credentials

    def get_chap_password(self, target, user_type=UserType.INCOMING):
        credentials = self.get_chap_users(target)
        if user_type not in credentials:
            raise TargetNotFoundError(f"No {user_type} CHAP user on {target}")
        return credentials[user_type][1]

    def add_chap_user(self, target, user_type, user, password, close_sessions=True):
        '''
        Sets the CHAP credential of one direction and turns on TPG
        authentication.

        @param close_sessions: Disable the TPG while the credential is
        changed, so no initiator sees it half-configured.
        '''
        user_key, password_key = self._auth_keys(user_type)
        with self._lock.held():
            if user_type in self.list_chap_users(target):
                raise LIOTargetError(
                    f"A target user already exists. Delete the existing {user_type} "
                    "user in order to add another user")
            if len(password) < min_chap_password_length:
                raise LIOTargetError(
                    f"Password must be at least {min_chap_password_length} characters in length.")

            if close_sessions:
                self.close_sessions_on_target(target)
            try:
                self._set_tpg_authentication(target, True)
                self._set_auth(target, {user_key: user, password_key: password})
            finally:
                if close_sessions:
                    self.allow_sessions_on_target(target)

    def remove_chap_user(self, target, user_type, user):
        '''
        Clears the CHAP credential of one direction; TPG authentication is
        turned off once neither direction has a user.
        '''
        user_key, password_key = self._auth_keys(user_type)
        with self._lock.held():
            if self.list_chap_users(target).get(user_type) != user:
                raise TargetNotFoundError("The CHAP user does not exist for this target.")

            self._set_auth(target, {user_key: '', password_key: ''})

            if not self.list_chap_users(target):
                self._set_tpg_authentication(target, False)

    # Persisted configuration

    def is_configuration_restored(self):
        return self._restored.is_set()

    def mark_configuration_restored(self):
        '''
        Allows saves from now on. Called once the persisted configuration
        has been loaded back into the kernel after boot.
        '''
        self._restored.set()
        log.info("LIO configuration has been restored.")

    def _clear_configuration_restored(self):
        self._restored.clear()
        log.info("LIO configuration is no longer valid.")

    def restore_configuration(self, restore_file=None):
        with self._lock.held():
            self._targetctl.restore(restore_file or self.save_file)
            self.mark_configuration_restored()

    def clear_configuration(self):
        '''
        Wipes the kernel target configuration. Saves are refused until it
        is marked restored again.
        '''
        with self._lock.held():
            self._clear_configuration_restored()
            self._targetctl.clear()

    def save_configuration(self):
        '''
        Saves the persistent part of the kernel configuration: temporary
        targets, loop-backed, temporary and restore backstores and the LUNs
        using them are left out.

        @return: False, without saving, if the configuration has not been
        restored since boot; saving then would drop every saved target.
        '''
        with self._lock.held():
            if not self.is_configuration_restored():
                log.warning("LIO configuration has not been restored yet -- skipping save.")
                return False

            directory = os.path.dirname(self.save_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            dump_file = f"{self.save_file}.dump"
            self._targetctl.save(dump_file)
            try:
                config = read_config(dump_file)
                strip_unpersisted(config, self.is_target_temporary,
                                  self._is_backstore_not_persisted)
                write_config(config, self.save_file)
            finally:
                with ignored(FileNotFoundError):
                    os.remove(dump_file)

        log.debug("Saved LIO configuration to %s", self.save_file)
        return True

    def _is_backstore_not_persisted(self, storage_object):
        name = storage_object.get('name', '')
        return (name.endswith(temporary_suffix)
                or is_loop_device_path(storage_object.get('dev', ''))
                or self._is_restore_backstore(name))

    def _is_restore_backstore(self, name):
        '''
        True if the backstore called name is backed by a file in a restore
        mount directory.
        @raises: InconsistentStateError if several backstores share name.
        '''
        udev_path_files = self._tree.glob(f"{self.core_dir}/*/{name}/udev_path")
        if len(udev_path_files) > 1:
            raise InconsistentStateError(
                f"Multiple backstores with the same name {name}: {udev_path_files}")
        if not udev_path_files:
            log.warning("Unable to locate backstore %s", name)
            return False

        device = self._tree.read(udev_path_files[0])
        if is_loop_device_path(device):
            device = self._loops.loop_info(device).backing_file
        return os.path.basename(os.path.dirname(device)).endswith(restore_dir_suffix)
