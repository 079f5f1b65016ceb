'''
Provides various utility functions.

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
import subprocess
from contextlib import contextmanager

log = logging.getLogger(__name__)

default_timeout = 60

class LIOTargetError(Exception):
    '''
    Generic liotarget error.
    '''
    pass

class TargetNotFoundError(LIOTargetError):
    '''
    The target (or the credential asked for) does not exist.
    '''
    pass

class TargetExistsError(LIOTargetError):
    '''
    Attempt to create a target whose name is already taken.
    '''
    pass

class InconsistentStateError(LIOTargetError):
    '''
    The kernel state and what we expect of it have diverged, i.e. two
    backstores sharing a name. Never repaired automatically.
    '''
    pass

class UnexpectedLunCountError(InconsistentStateError):
    '''
    Creating a LUN did not make exactly one new LUN appear.
    '''
    pass

class ToolFailureError(LIOTargetError):
    '''
    A command line tool exited with a non-zero status.
    '''
    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result

    @property
    def returncode(self):
        return self.result.returncode if self.result is not None else None

class LockTimeoutError(LIOTargetError):
    '''
    The configfs lock could not be obtained in time.
    '''
    pass

class InitiatorError(LIOTargetError):
    '''
    A command could not be executed on the remote initiator host.
    '''
    pass

class RemoteProtocolError(InitiatorError):
    '''
    The remote host answered, but not in the shape we expected.
    '''
    pass


class CommandResult:
    '''
    Outcome of one command invocation.
    '''

    def __init__(self, args, returncode, stdout='', stderr=''):
        self.args = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def __repr__(self):
        return f"<CommandResult {' '.join(self.args)!r} rc={self.returncode}>"

    @property
    def ok(self):
        return self.returncode == 0

    @property
    def error_output(self):
        '''
        stderr if there is any, stdout otherwise.
        '''
        return (self.stderr or self.stdout or '').strip()


def run(args, timeout=default_timeout):
    '''
    Runs a command without a shell and collects its output.

    @param args: The argument vector, args[0] being the executable.
    @type args: list of str
    @param timeout: Seconds to wait for the command to exit.
    @type timeout: int
    @return: A CommandResult. A command that cannot be started or that
    times out is reported with returncode -1 rather than raised.
    '''
    args = [str(arg) for arg in args]
    try:
        process = subprocess.Popen(args,
                                   stdout=subprocess.PIPE,
                                   stderr=subprocess.PIPE,
                                   universal_newlines=True)
    except OSError as e:
        return CommandResult(args, -1, '', str(e))

    try:
        (stdoutdata, stderrdata) = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        (stdoutdata, stderrdata) = process.communicate()
        stderrdata = f"timed out after {timeout}s: {stderrdata}"
        return CommandResult(args, -1, stdoutdata, stderrdata)

    result = CommandResult(args, process.returncode, stdoutdata, stderrdata)
    log.debug("%s exited with %d", args[0], result.returncode)
    return result

def check(result, message):
    '''
    Raises ToolFailureError with the tool's own output appended to message
    unless the command succeeded. Returns the result otherwise.
    '''
    if not result.ok:
        raise ToolFailureError(f"{message}: {result.error_output}", result)
    return result

def fwrite(path, string):
    '''
    This function writes a string to a file, and takes care of
    opening it and closing it. If the file does not exist, it
    will be created.

    @param path: The file to write to.
    @type path: string
    @param string: The string to write to the file.
    @type string: string
    '''
    with open(path, 'w') as file_fd:
        file_fd.write(str(string))

def fread(path):
    '''
    This function reads the contents of a file.
    It takes care of opening and closing it.

    @param path: The path to the file to read from.
    @type path: string
    @return: A string containing the file's contents, stripped.
    '''
    with open(path, 'r') as file_fd:
        return file_fd.read().strip()

def fnv1a32(data):
    '''
    32-bit FNV-1a hash of a string, as 8 lowercase hex digits.

    >>> fnv1a32('')
    '811c9dc5'
    >>> fnv1a32('a')
    'e40c292c'
    '''
    value = 0x811c9dc5
    for byte in data.encode('utf-8'):
        value ^= byte
        value = (value * 0x01000193) & 0xffffffff
    return f"{value:08x}"

def basename_without(path, suffix):
    '''
    Like basename(1) with a suffix: the suffix is stripped only if it is
    not the whole name.
    '''
    name = os.path.basename(path.rstrip('/'))
    if suffix and name.endswith(suffix) and name != suffix:
        name = name[:-len(suffix)]
    return name

@contextmanager
def ignored(*exceptions):
    try:
        yield
    except exceptions:
        pass

def _test():
    '''Run the doctests'''
    import doctest
    doctest.testmod()

if __name__ == "__main__":
    _test()
