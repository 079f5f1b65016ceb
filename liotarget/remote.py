'''
Drives the iSCSI initiator of a remote Windows host.

There is no API on the other side, only a command execution channel: the
client issues cmd.exe, iscsicli.exe and diskpart command lines and scrapes
their text output.

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
import time
from collections.abc import Mapping

from .target import default_naming_authority, iqn_date
from .utils import InitiatorError, RemoteProtocolError

log = logging.getLogger(__name__)

cmd_executable = 'cmd.exe'
cmd_run = '/c'
# iscsicli.exe exit codes are unreliable, so success is echoed explicitly
cmd_format = '%s %s > nul 2>&1 && echo %s || echo %s'

COMMAND_SUCCESS = 'COMMAND_SUCCESS'
COMMAND_FAILURE = 'COMMAND_FAILURE'

iscsicli = 'iscsicli.exe'
ADD_TARGET_PORTAL = 'AddTargetPortal'
LOGIN_TARGET = 'QLoginTarget'
LOGOUT_TARGET = 'LogoutTarget'
SESSION_LIST = 'SessionList'

automount_enable_commands = [
    "echo automount enable noerr >> %TEMP%\\diskpart.txt",
    "diskpart /s %TEMP%\\diskpart.txt",
    "del %TEMP%\\diskpart.txt",
]

automount_disable_commands = [
    "echo automount disable noerr >> %TEMP%\\diskpart.txt",
    "diskpart /s %TEMP%\\diskpart.txt",
    "del %TEMP%\\diskpart.txt",
]

default_port = 3260
default_target_prefix = f"iqn.{iqn_date}.{default_naming_authority}"

discover_attempts = 5
discover_interval = 1

_physical_drive = re.compile(r'^\\\\\.\\PhysicalDrive(\d+)$')
_field = re.compile(r'^([^:]+?)\s*:(?:\s+(.*))?$')
_volume_path = re.compile(r'^(?:[A-Za-z]:\\|\\\\\?\\)')

TARGET_NAME = 'Target Name'
SESSION_ID = 'Session Id'
NUMBER_CONNECTIONS = 'Number Connections'
DEVICE_TYPE = 'Device Type'
LEGACY_DEVICE_NAME = 'Legacy Device Name'
VOLUME_PATH_NAMES = 'Volume Path Names'


def physical_drive_number(legacy_name):
    '''
    >>> physical_drive_number('\\\\\\\\.\\\\PhysicalDrive3')
    3
    >>> physical_drive_number('\\\\\\\\.\\\\CdRom0') is None
    True
    '''
    match = _physical_drive.match(legacy_name or '')
    return int(match.group(1)) if match else None

def partition_path(drive_number):
    return f"\\\\?\\GLOBALROOT\\Device\\Harddisk{drive_number}\\Partition1"


class InitiatorDevice:
    '''
    A device attached to the remote host through an iSCSI session.
    '''

    def __init__(self, target_name, legacy_name, session_id, volume_path_names=None):
        self.target_name = target_name
        self.legacy_name = legacy_name
        self.session_id = session_id
        self.volume_path_names = list(volume_path_names or [])

    def __repr__(self):
        return (f"<InitiatorDevice {self.target_name} session={self.session_id} "
                f"{self.legacy_name}>")

    def __eq__(self, other):
        return isinstance(other, InitiatorDevice) and vars(self) == vars(other)


def _split_field(line):
    '''
    @return: (key, value) of a "Key   : value" line, or (None, None).
    '''
    match = _field.match(line)
    if not match:
        return (None, None)
    return (match.group(1).strip(), (match.group(2) or '').strip())

def parse_unused_sessions(text, target_prefix=default_target_prefix):
    '''
    Finds the sessions of our targets that have no connection left in
    "iscsicli SessionList" output.

    @return: A list of {'SessionId': ..., 'TargetName': ...} dicts.
    '''
    sessions = []
    if ' sessions' not in text:
        return sessions

    session_id = target_name = ''
    for line in text.splitlines():
        key, value = _split_field(line.strip())
        if key == TARGET_NAME:
            target_name = value
        elif key == SESSION_ID:
            session_id = value
        elif key == NUMBER_CONNECTIONS:
            if value == '0' and session_id and target_prefix in target_name:
                sessions.append({'SessionId': session_id, 'TargetName': target_name})
                session_id = target_name = ''
    return sessions

def parse_devices(text):
    '''
    Extracts the devices from "iscsicli SessionList" output. The report is
    a sequence of sessions, each with a "Devices:" list; a device starts
    at its "Device Type" line, and "Volume Path Names" is followed by one
    path per line.

    @return: A list of InitiatorDevice.
    '''
    devices = []
    if 'Devices:' not in text:
        return devices

    in_devices = in_volume_paths = False
    session_id = None
    current = None

    def flush():
        if current and len(current) > 1:
            devices.append(InitiatorDevice(current.get(TARGET_NAME),
                                           current.get(LEGACY_DEVICE_NAME),
                                           current.get(SESSION_ID),
                                           current.get(VOLUME_PATH_NAMES)))

    for line in text.splitlines():
        line = line.strip()
        key, value = _split_field(line)

        if not in_devices:
            if line == 'Devices:':
                in_devices = True
            elif key == SESSION_ID:
                session_id = value
            continue

        if key is None:
            if in_volume_paths and _volume_path.match(line):
                current[VOLUME_PATH_NAMES].append(line)
            continue

        if key == SESSION_ID:
            in_devices = in_volume_paths = False
            session_id = value
        elif key == DEVICE_TYPE:
            flush()
            current = {SESSION_ID: session_id, DEVICE_TYPE: value}
            in_volume_paths = False
        elif current is None:
            continue
        elif key == VOLUME_PATH_NAMES:
            in_volume_paths = True
            current[VOLUME_PATH_NAMES] = [value] if value else []
        else:
            in_volume_paths = False
            current[key] = value

    flush()
    return devices


class RemoteInitiatorClient:
    '''
    The executor is the remote command channel: an object with a
    run_command(command, arguments, directory=None) method returning a
    mapping whose "output" is a list holding the command's output.

    Every call that cannot be executed raises InitiatorError, and
    RemoteProtocolError when the answer does not have the expected shape.
    '''

    def __init__(self, executor, sleep=time.sleep, target_prefix=default_target_prefix):
        self._executor = executor
        self._sleep = sleep
        self.target_prefix = target_prefix
        self._portal_registered = False

    def _run_command(self, command, arguments, directory=None):
        try:
            response = self._executor.run_command(command, arguments, directory=directory)
        except InitiatorError:
            raise
        except Exception as e:
            raise InitiatorError(f"There was an error executing {command}: {e}") from e

        if not isinstance(response, Mapping):
            raise RemoteProtocolError(
                f"There was an error executing {command}. Response: {response!r}")
        output = response.get('output')
        if not isinstance(output, (list, tuple)) or not output \
                or not isinstance(output[0], str):
            raise RemoteProtocolError(
                f"Unexpected response to {command}: {response!r}")
        return output[0].strip()

    def _run_multiple(self, commands):
        return self._run_command(cmd_executable, [cmd_run, ' & '.join(commands)])

    def _run_iscsicli(self, arguments):
        command = cmd_format % (iscsicli, ' '.join(arguments),
                                COMMAND_SUCCESS, COMMAND_FAILURE)
        output = self._run_command(cmd_executable, [cmd_run, command])
        if COMMAND_SUCCESS not in output:
            raise InitiatorError(f"{iscsicli} {arguments[0]} did not return successful")
        log.debug("%s %s executed successfully", iscsicli, arguments[0])

    def _session_list(self):
        return self._run_command(iscsicli, [SESSION_LIST])

    def _enable_automount(self):
        self._run_multiple(automount_enable_commands)

    def _disable_automount(self):
        self._run_multiple(automount_disable_commands)

    def register_portal(self, ip, port=default_port):
        # the legacy interface wants string arguments
        self._run_command(iscsicli, [ADD_TARGET_PORTAL, ip, str(port)])
        self._portal_registered = True

    def is_portal_registered(self):
        return self._portal_registered

    def login_to_target(self, target_name, user=None, password=None):
        '''
        Logs in with automount disabled, so Windows does not grab the
        volumes before we bring them online ourselves.
        '''
        log.info("Logging in to %s with %s", target_name, iscsicli)
        arguments = [LOGIN_TARGET, target_name]
        if user and password:
            arguments += [user, password]

        self._disable_automount()
        try:
            self._run_iscsicli(arguments)
        finally:
            self._enable_automount()

    def discover_volume(self, target_name):
        '''
        Waits for the device of target_name to show up and brings its disk
        online.

        @return: The device path of its first partition, or False if the
        device never appeared or is not a physical drive.
        '''
        drive_number = None
        self._disable_automount()
        try:
            device = None
            for _ in range(discover_attempts):
                # devices take a moment to be listed after login
                self._sleep(discover_interval)
                device = self._find_device(target_name)
                if device is not None:
                    break

            if device is not None:
                drive_number = physical_drive_number(device.legacy_name)
                if drive_number is not None:
                    self.online_disk(drive_number)
                    self._sleep(discover_interval)
        finally:
            self._enable_automount()

        if drive_number is None:
            log.warning("No volume found for %s", target_name)
            return False
        return partition_path(drive_number)

    def _find_device(self, target_name):
        for device in self.list_devices():
            if device.target_name == target_name:
                return device
        return None

    def logout_from_target(self, target_name):
        '''
        Logging out from a target without a session succeeds.
        '''
        device = self._find_device(target_name)
        if device is None:
            return True
        return self.logout_from_session(device.session_id)

    def logout_from_session(self, session_id):
        self._run_command(iscsicli, [LOGOUT_TARGET, session_id])
        return True

    def list_unused_sessions(self):
        return parse_unused_sessions(self._session_list(), self.target_prefix)

    def list_devices(self):
        return parse_devices(self._session_list())

    def online_disk(self, disk_number):
        mount_dir = f"%TEMP%\\Harddisk{disk_number}Partition1"
        self._run_multiple([
            f"echo select disk {disk_number:d} > %TEMP%\\diskpart.txt",
            "echo attribute disk clear readonly noerr >> %TEMP%\\diskpart.txt",
            "echo online disk noerr >> %TEMP%\\diskpart.txt",
            f"mountvol {mount_dir} /D",
            f"md {mount_dir}",
            "diskpart /s %TEMP%\\diskpart.txt",
            f"echo select disk {disk_number:d} > %TEMP%\\diskpart.txt",
            "echo select partition 1 >> %TEMP%\\diskpart.txt",
            f"echo assign mount={mount_dir} >> %TEMP%\\diskpart.txt",
            "diskpart /s %TEMP%\\diskpart.txt",
            "del %TEMP%\\diskpart.txt",
        ])

    def offline_disk(self, disk_number):
        self._run_multiple([
            f"echo select disk {disk_number:d} > %TEMP%\\diskpart.txt",
            "echo select partition 1 >> %TEMP%\\diskpart.txt",
            "echo remove all dismount noerr >> %TEMP%\\diskpart.txt",
            f"echo select disk {disk_number:d} >> %TEMP%\\diskpart.txt",
            "echo offline disk >> %TEMP%\\diskpart.txt",
            "diskpart /s %TEMP%\\diskpart.txt",
            f"rmdir /S /Q %TEMP%\\Harddisk{disk_number}Partition1",
            "del %TEMP%\\diskpart.txt",
        ])
