#    This file is part of Bedrock Viewer.
#
#    Bedrock Viewer is free software: you can redistribute it and/or
#    modify it under the terms of the GNU General Public License as published
#    by the Free Software Foundation, either version 3 of the License, or (at
#    your option) any later version.
#
#    Bedrock Viewer is distributed in the hope that it will be useful,
#    but WITHOUT ANY WARRANTY; without even the implied warranty of
#    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU General
#    Public License for more details.
#
#    You should have received a copy of the GNU General Public License along
#    with Bedrock Viewer.  If not, see <http://www.gnu.org/licenses/>.

import bisect

"""
The key-value store a world lives in.

The world code only needs an ordered walk over (key, value) pairs and a
lookup by key, so any LevelDB binding that can read Bedrock's
zlib-compressed tables can be wrapped in a RecordStore. MemoryStore
keeps everything in a sorted list and is handy for tests and for
records that were extracted some other way.

"""


class RecordStore(object):
    """Interface of the store a World scans. Subclasses implement
    iterate() and get().
    """
    def iterate(self, start=None, prefix=None):
        """Yields (key, value) pairs in ascending key order, beginning at
        the first key >= start and, if prefix is given, only keys that
        begin with prefix.
        """
        raise NotImplementedError()

    def get(self, key):
        """Returns the value stored under key, or None."""
        raise NotImplementedError()

    def __iter__(self):
        return self.iterate()

    def close(self):
        pass


class MemoryStore(RecordStore):
    def __init__(self, records=()):
        if isinstance(records, dict):
            records = records.items()
        self._data = {}
        for key, value in records:
            self._data[bytes(key)] = bytes(value)
        self._keys = sorted(self._data)

    def __len__(self):
        return len(self._keys)

    def __repr__(self):
        return "<MemoryStore records=%d>" % len(self._keys)

    def put(self, key, value):
        key = bytes(key)
        if key not in self._data:
            bisect.insort(self._keys, key)
        self._data[key] = bytes(value)

    def get(self, key):
        return self._data.get(bytes(key))

    def iterate(self, start=None, prefix=None):
        lower = start if start is not None else (prefix or b"")
        if prefix is not None and lower < prefix:
            lower = prefix
        i = bisect.bisect_left(self._keys, lower)
        while i < len(self._keys):
            key = self._keys[i]
            if prefix is not None and not key.startswith(prefix):
                break
            yield key, self._data[key]
            i += 1
