'''
The parts of a protected agent that own iSCSI entities.

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

image_suffix = '.datto'
encrypted_image_suffix = '.detto'
checksum_suffix = '.checksum'


class Volume:
    def __init__(self, guid, included=True):
        self.guid = guid
        self.included = included

    def __repr__(self):
        return f"<Volume {self.guid}{'' if self.included else ' (excluded)'}>"


class Agent:
    '''
    An agent's volume images live in its dataset's mount point, named after
    the volume GUID: <guid>.datto (or .detto when encrypted) plus a
    <guid>.checksum companion.
    '''

    def __init__(self, key_name, mount_point, volumes=()):
        self.key_name = key_name
        self.mount_point = mount_point
        self.volumes = list(volumes)

    def __repr__(self):
        return f"<Agent {self.key_name}>"

    def included_volumes(self):
        return [volume for volume in self.volumes if volume.included]

    def volume_base_path(self, volume):
        return os.path.join(self.mount_point, volume.guid)
