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

import array
import enum
import logging
import struct
import sys

import numpy

from .errors import InvalidTag, RecursionLimitExceeded, Truncated

"""
This module reads NBT, the tagged binary tree format that nearly every
structured value in a Bedrock world is stored in.

Decoded values keep their tag type:

* Byte, Short, Int, Long, Float and Double become numpy scalars
  (int8, int16, int32, int64, float32, float64)
* Byte_Array, Int_Array and Long_Array become array.array objects
* String becomes str
* List becomes an NBTList, which remembers its element type
* Compound becomes an NBTCompound, an insertion-ordered dict

Byte order is chosen by the caller. Bedrock writes little-endian NBT
everywhere on disk.

"""

MAX_DEPTH = 512


class TagType(enum.IntEnum):
    END = 0
    BYTE = 1
    SHORT = 2
    INT = 3
    LONG = 4
    FLOAT = 5
    DOUBLE = 6
    BYTE_ARRAY = 7
    STRING = 8
    LIST = 9
    COMPOUND = 10
    INT_ARRAY = 11
    LONG_ARRAY = 12


# smallest possible encoding of one list element of each type, used to
# reject counts that can't fit in what's left of the buffer
_MIN_PAYLOAD = {
    TagType.BYTE: 1,
    TagType.SHORT: 2,
    TagType.INT: 4,
    TagType.LONG: 8,
    TagType.FLOAT: 4,
    TagType.DOUBLE: 8,
    TagType.BYTE_ARRAY: 4,
    TagType.STRING: 2,
    TagType.LIST: 5,
    TagType.COMPOUND: 1,
    TagType.INT_ARRAY: 4,
    TagType.LONG_ARRAY: 4,
}

_INT_TYPECODE = 'i' if array.array('i').itemsize == 4 else 'l'


class NBTList(list):
    """A list of same-typed NBT values. element_type is a TagType."""
    def __init__(self, element_type, items=()):
        list.__init__(self, items)
        self.element_type = TagType(element_type)

    def __eq__(self, other):
        if isinstance(other, NBTList) and other.element_type != self.element_type:
            return False
        return list.__eq__(self, other)

    # list has its own __ne__, which would skip the element_type check
    def __ne__(self, other):
        return not self == other

    __hash__ = None

    def __repr__(self):
        return "NBTList(%s, %s)" % (self.element_type.name, list.__repr__(self))


class NBTCompound(dict):
    """Named NBT values in the order they appeared in the source."""
    def __repr__(self):
        return "NBTCompound(%s)" % dict.__repr__(self)


def tag_type_of(value):
    """Returns the TagType a decoded value was read as."""
    if value is None:
        return TagType.END
    if isinstance(value, NBTCompound):
        return TagType.COMPOUND
    if isinstance(value, NBTList):
        return TagType.LIST
    if isinstance(value, str):
        return TagType.STRING
    if isinstance(value, array.array):
        if value.itemsize == 1:
            return TagType.BYTE_ARRAY
        if value.itemsize == 4:
            return TagType.INT_ARRAY
        return TagType.LONG_ARRAY
    for numpy_type, tag in ((numpy.int8, TagType.BYTE),
                            (numpy.int16, TagType.SHORT),
                            (numpy.int32, TagType.INT),
                            (numpy.int64, TagType.LONG),
                            (numpy.float32, TagType.FLOAT),
                            (numpy.float64, TagType.DOUBLE)):
        if isinstance(value, numpy_type):
            return tag
    raise TypeError("%r is not a decoded NBT value" % (value,))


def to_builtin(value):
    """Converts a decoded tree into plain Python objects (dicts, lists,
    ints, floats, strs), e.g. for json.dump. Tag types are lost.
    """
    if isinstance(value, dict):
        return dict((k, to_builtin(v)) for k, v in value.items())
    if isinstance(value, (list, array.array)):
        return [to_builtin(v) for v in value]
    if isinstance(value, numpy.generic):
        return value.item()
    return value


class NBTReader(object):
    """Reads NBT tags out of an in-memory buffer, keeping a cursor.

    The reader holds no state besides its buffer and cursor, so one reader
    per buffer is all the synchronisation needed.

    """
    _little = {
        'byte': struct.Struct("<b"),
        'ubyte': struct.Struct("<B"),
        'short': struct.Struct("<h"),
        'ushort': struct.Struct("<H"),
        'int': struct.Struct("<i"),
        'long': struct.Struct("<q"),
        'float': struct.Struct("<f"),
        'double': struct.Struct("<d"),
    }
    _big = {
        'byte': struct.Struct(">b"),
        'ubyte': struct.Struct(">B"),
        'short': struct.Struct(">h"),
        'ushort': struct.Struct(">H"),
        'int': struct.Struct(">i"),
        'long': struct.Struct(">q"),
        'float': struct.Struct(">f"),
        'double': struct.Struct(">d"),
    }

    def __init__(self, buffer, little_endian=True, offset=0, max_depth=MAX_DEPTH):
        self._buffer = buffer
        self.offset = offset
        self.little_endian = little_endian
        self.max_depth = max_depth
        self._structs = self._little if little_endian else self._big
        self._swap_arrays = (sys.byteorder == 'little') != little_endian

        self._read_tagmap = {
            TagType.BYTE: self._read_tag_byte,
            TagType.SHORT: self._read_tag_short,
            TagType.INT: self._read_tag_int,
            TagType.LONG: self._read_tag_long,
            TagType.FLOAT: self._read_tag_float,
            TagType.DOUBLE: self._read_tag_double,
            TagType.BYTE_ARRAY: self._read_tag_byte_array,
            TagType.STRING: self._read_tag_string,
            TagType.LIST: self._read_tag_list,
            TagType.COMPOUND: self._read_tag_compound,
            TagType.INT_ARRAY: self._read_tag_int_array,
            TagType.LONG_ARRAY: self._read_tag_long_array,
        }

    @property
    def remaining(self):
        return len(self._buffer) - self.offset

    def at_end(self):
        return self.offset >= len(self._buffer)

    def _advance(self, size):
        start = self.offset
        if size > len(self._buffer) - start:
            raise Truncated(start, size, max(0, len(self._buffer) - start))
        self.offset = start + size
        return start

    def _unpack(self, name):
        s = self._structs[name]
        start = self._advance(s.size)
        return s.unpack_from(self._buffer, start)[0]

    def _read_raw(self, size):
        start = self._advance(size)
        return bytes(self._buffer[start:start + size])

    def _read_type(self):
        start = self.offset
        tagtype = self._unpack('ubyte')
        if tagtype > TagType.LONG_ARRAY:
            raise InvalidTag(tagtype, start)
        return TagType(tagtype)

    def _read_count(self, width):
        start = self.offset
        count = self._unpack('int')
        if count < 0 or count * width > self.remaining:
            raise Truncated(start + 4, max(count, 0) * width, self.remaining)
        return count

    def _read_tag_byte(self, depth=0):
        return numpy.int8(self._unpack('byte'))

    def _read_tag_short(self, depth=0):
        return numpy.int16(self._unpack('short'))

    def _read_tag_int(self, depth=0):
        return numpy.int32(self._unpack('int'))

    def _read_tag_long(self, depth=0):
        return numpy.int64(self._unpack('long'))

    def _read_tag_float(self, depth=0):
        return numpy.float32(self._unpack('float'))

    def _read_tag_double(self, depth=0):
        return numpy.float64(self._unpack('double'))

    def _read_array(self, typecode):
        itemsize = array.array(typecode).itemsize
        count = self._read_count(itemsize)
        result = array.array(typecode)
        result.frombytes(self._read_raw(count * itemsize))
        if self._swap_arrays and itemsize > 1:
            result.byteswap()
        return result

    def _read_tag_byte_array(self, depth=0):
        return self._read_array('b')

    def _read_tag_int_array(self, depth=0):
        return self._read_array(_INT_TYPECODE)

    def _read_tag_long_array(self, depth=0):
        return self._read_array('q')

    def _read_tag_string(self, depth=0):
        start = self.offset
        length = self._unpack('ushort')
        raw = self._read_raw(length)
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError:
            # surrogateescape keeps the original bytes recoverable
            logging.warning("String at offset %d is not valid UTF-8, keeping raw bytes", start)
            return raw.decode('utf-8', 'surrogateescape')

    def _read_tag_list(self, depth):
        if depth > self.max_depth:
            raise RecursionLimitExceeded(self.max_depth, self.offset)
        type_offset = self.offset
        element_type = self._read_type()
        if element_type == TagType.END:
            count = self._read_count(0)
            if count:
                raise InvalidTag(TagType.END, type_offset)
            return NBTList(TagType.END)

        count = self._read_count(_MIN_PAYLOAD[element_type])
        read_payload = self._read_tagmap[element_type]
        # a plain loop keeps nesting at one Python frame per level
        items = NBTList(element_type)
        for _ in range(count):
            items.append(read_payload(depth + 1))
        return items

    def _read_tag_compound(self, depth):
        if depth > self.max_depth:
            raise RecursionLimitExceeded(self.max_depth, self.offset)
        tags = NBTCompound()
        while True:
            tagtype = self._read_type()
            if tagtype == TagType.END:
                break
            name = self._read_tag_string()
            payload = self._read_tagmap[tagtype](depth + 1)
            if name in tags:
                logging.debug("Duplicate tag %r in compound, keeping the last value", name)
            tags[name] = payload
        return tags

    def read_tag(self):
        """Reads one named tag at the cursor and returns (name, value).

        A bare End byte reads as ('', None).

        """
        tagtype = self._read_type()
        if tagtype == TagType.END:
            return ('', None)
        name = self._read_tag_string()
        return (name, self._read_tagmap[tagtype](1))


def decode(buffer, little_endian=True, offset=0, max_depth=MAX_DEPTH):
    """Decodes the single named tag at offset and returns (name, value).

    Raises Truncated, InvalidTag or RecursionLimitExceeded on bad input.

    """
    return NBTReader(buffer, little_endian, offset, max_depth).read_tag()


def decode_all(buffer, little_endian=True, offset=0, count=None, max_depth=MAX_DEPTH):
    """Decodes consecutive named tags starting at offset, until count
    tags have been read or, if count is None, until the buffer is used up.

    Returns a list of (name, value) pairs.

    """
    reader = NBTReader(buffer, little_endian, offset, max_depth)
    tags = []
    while (count is None and not reader.at_end()) or (count is not None and len(tags) < count):
        tags.append(reader.read_tag())
    return tags


_level_header = struct.Struct("<ii")


def load_level_dat(path):
    """Reads a Bedrock level.dat: a little-endian int32 storage version, an
    int32 payload length and a little-endian NBT compound.

    Returns (storage_version, root_name, root).

    """
    with open(path, "rb") as f:
        data = f.read()
    return decode_level_dat(data)


def decode_level_dat(data):
    if len(data) < _level_header.size:
        raise Truncated(0, _level_header.size, len(data))
    storage_version, length = _level_header.unpack_from(data, 0)
    if length < 0 or _level_header.size + length > len(data):
        raise Truncated(_level_header.size, length, len(data) - _level_header.size)
    payload = data[_level_header.size:_level_header.size + length]
    name, root = decode(payload, little_endian=True)
    return storage_version, name, root
