'''
Best-effort removal of the targets and sessions belonging to one agent host.

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
import time

from .remote import physical_drive_number
from .target import default_prefix
from .utils import InitiatorError, LIOTargetError, TargetNotFoundError

log = logging.getLogger(__name__)

logout_attempts = 5
logout_interval = 1
delete_attempts = 4
delete_interval = 2


class SessionCleaner:
    '''
    Used when an agent is repaired, re-paired or removed: detaches the
    agent host from our targets and deletes them. Failures are logged and
    skipped so one stuck target does not block the others.
    '''

    def __init__(self, hostname, target_store, initiator,
                 prefixes=(default_prefix,), sleep=time.sleep):
        '''
        @param hostname: Host name of the agent, as used in target names.
        @param target_store: The TargetStore of this device.
        @param initiator: RemoteInitiatorClient for the agent host.
        @param prefixes: Target name prefixes to consider.
        '''
        self.hostname = hostname
        self._store = target_store
        self._initiator = initiator
        self.prefixes = tuple(prefixes)
        self._sleep = sleep

    def __repr__(self):
        return f"<SessionCleaner {self.hostname}>"

    def _name_bases(self):
        for prefix in self.prefixes:
            yield self._store.make_target_name(self.hostname, prefix)
            yield self._store.make_temporary_target_name(self.hostname, prefix)

    def is_agent_target(self, target):
        '''
        True for <base> and <base>-<anything>, base being the persistent
        or temporary target name of the host for one of the prefixes.
        '''
        return any(target == base or target.startswith(base + '-')
                   for base in self._name_bases())

    def list_agent_target_names(self):
        return [target for target in self._store.list_targets()
                if self.is_agent_target(target)]

    def prune_initiator(self):
        '''
        Offlines the disks of our targets on the agent host, then logs out
        of their sessions.
        '''
        targets = set(self.list_agent_target_names())
        devices = [device for device in self._initiator.list_devices()
                   if device.target_name in targets and device.session_id]

        for device in devices:
            drive_number = physical_drive_number(device.legacy_name)
            if drive_number is None:
                continue
            try:
                self._initiator.offline_disk(drive_number)
            except InitiatorError as e:
                log.warning("Could not offline disk %d of %s: %s",
                            drive_number, device.target_name, e)

        sessions = []
        for device in devices:
            if device.session_id not in sessions:
                sessions.append(device.session_id)
        for session_id in sessions:
            self._logout(session_id)

    def _logout(self, session_id):
        for attempt in range(1, logout_attempts + 1):
            try:
                return self._initiator.logout_from_session(session_id)
            except InitiatorError as e:
                if attempt == logout_attempts:
                    log.error("Giving up logging out of session %s: %s", session_id, e)
                    return False
                log.debug("Logout of session %s failed, retrying: %s", session_id, e)
                self._sleep(logout_interval)

    def prune_agent_targets(self):
        for target in self.list_agent_target_names():
            self._delete_target(target)

    def _delete_target(self, target):
        for attempt in range(1, delete_attempts + 1):
            try:
                self._store.delete_target(target)
                return True
            except TargetNotFoundError:
                return True
            except LIOTargetError as e:
                if attempt == delete_attempts:
                    log.error("Giving up deleting target %s: %s", target, e)
                    return False
                log.warning("Deleting target %s failed, retrying: %s", target, e)
                self._sleep(delete_interval)

    def prune(self):
        '''
        prune_initiator(), then prune_agent_targets(), then saves the
        configuration. A failure in one step does not prevent the next
        and is logged, not raised.
        '''
        try:
            self.prune_initiator()
        except LIOTargetError as e:
            log.error("Failed to prune iSCSI sessions of %s: %s", self.hostname, e)
        try:
            self.prune_agent_targets()
        except LIOTargetError as e:
            log.error("Failed to prune iSCSI targets of %s: %s", self.hostname, e)
        try:
            self._store.save_configuration()
        except LIOTargetError as e:
            log.error("Failed to save LIO configuration after pruning %s: %s", self.hostname, e)
