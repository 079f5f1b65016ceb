'''
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

__version__ = '1.0.0'

from .utils import LIOTargetError, TargetNotFoundError, TargetExistsError
from .utils import InconsistentStateError, UnexpectedLunCountError
from .utils import ToolFailureError, LockTimeoutError
from .utils import InitiatorError, RemoteProtocolError

from .agent import Agent, Volume
from .lock import ConfigFSLock, process_lock
from .target import TargetStore, UserType
from .initiator import LocalInitiator
from .remote import RemoteInitiatorClient, InitiatorDevice
from .cleaner import SessionCleaner

logging.getLogger(__name__).addHandler(logging.NullHandler())


__all__ = [
    "LIOTargetError",
    "TargetNotFoundError",
    "TargetExistsError",
    "InconsistentStateError",
    "UnexpectedLunCountError",
    "ToolFailureError",
    "LockTimeoutError",
    "InitiatorError",
    "RemoteProtocolError",
    "Agent",
    "Volume",
    "ConfigFSLock",
    "process_lock",
    "TargetStore",
    "UserType",
    "LocalInitiator",
    "RemoteInitiatorClient",
    "InitiatorDevice",
    "SessionCleaner",
]
