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

import struct
from collections import namedtuple

import numpy

from . import nbt
from .bitstream import unpack_indices, word_layout
from .errors import (PaletteIndexOutOfRange, Truncated,
                     UnsupportedPaletteWidth, UnsupportedSubchunkVersion)

"""
Decoding of SubChunkPrefix records, the 16x16x16 slices chunk columns
are made of.

A sub-chunk value is a small header followed by one or more block
storages. Each storage is a version byte giving the bit width of its
packed palette indices, the indices themselves packed into little-endian
32-bit words, an int32 palette size and that many little-endian NBT
compounds describing the block states.

Cells are numbered ((x*16)+z)*16+y, so index arrays reshape to [x, z, y].

"""

SUBCHUNK_CELLS = 4096

# layer version byte -> bits per block is version >> 1
LAYER_VERSIONS = frozenset((0x00, 0x01, 0x02, 0x03, 0x04, 0x05, 0x06,
                            0x08, 0x0a, 0x0c, 0x10, 0x20))

SubChunkLayout = namedtuple("SubChunkLayout",
                            "version bits_per_block blocks_per_word block_offset palette_offset")

PaletteEntry = namedtuple("PaletteEntry", "name states version")

SubChunkHeader = namedtuple("SubChunkHeader", "format_version storage_count y_index layer_offset")

_palette_size = struct.Struct("<i")


def read_subchunk_header(value):
    """Works out where the first block storage of a sub-chunk starts.

    0x01: [version][storage]
    0x08: [version][storage count][storage]...
    0x09: [version][storage count][y index][storage]...

    """
    if len(value) < 1:
        raise Truncated(0, 1, 0)
    fmt = value[0]
    if fmt == 0x01:
        return SubChunkHeader(fmt, 1, None, 1)
    if fmt == 0x08:
        if len(value) < 2:
            raise Truncated(1, 1, 0)
        return SubChunkHeader(fmt, value[1], None, 2)
    if fmt == 0x09:
        if len(value) < 3:
            raise Truncated(len(value), 3 - len(value), 0)
        y_index = value[2] - 256 if value[2] > 127 else value[2]
        return SubChunkHeader(fmt, value[1], y_index, 3)
    raise UnsupportedSubchunkVersion(fmt)


def setup_block_storage(value, layer_offset):
    """Returns the SubChunkLayout of the block storage whose version byte
    sits at layer_offset.
    """
    if layer_offset >= len(value):
        raise Truncated(layer_offset, 1, 0)
    version = value[layer_offset]
    if version not in LAYER_VERSIONS:
        raise UnsupportedPaletteWidth(version)

    bits_per_block = version >> 1
    block_offset = layer_offset + 1
    if bits_per_block == 0:
        # every cell is palette entry 0, no words are stored
        return SubChunkLayout(version, 0, 0, block_offset, block_offset)

    blocks_per_word, word_count = word_layout(bits_per_block, SUBCHUNK_CELLS)
    return SubChunkLayout(version, bits_per_block, blocks_per_word,
                          block_offset, block_offset + word_count * 4)


def _palette_entry(tag):
    if not isinstance(tag, nbt.NBTCompound):
        return PaletteEntry(None, nbt.NBTCompound(), None)
    name = tag.get("name")
    if not isinstance(name, str):
        name = None
    states = tag.get("states")
    if not isinstance(states, nbt.NBTCompound):
        states = nbt.NBTCompound()
    version = tag.get("version")
    if not isinstance(version, (numpy.integer, int)):
        version = None
    return PaletteEntry(name, states, None if version is None else int(version))


def read_palette(value, layout):
    """Reads the palette that follows a block storage.

    Returns (palette, end_offset), palette being a list of PaletteEntry.

    """
    if layout.bits_per_block == 0:
        count = 1
        offset = layout.palette_offset
    else:
        offset = layout.palette_offset
        if offset + _palette_size.size > len(value):
            raise Truncated(offset, _palette_size.size, max(0, len(value) - offset))
        count = _palette_size.unpack_from(value, offset)[0]
        offset += _palette_size.size
        # each entry is at least one byte
        if count < 0 or count > len(value) - offset:
            raise Truncated(offset, max(count, 0), len(value) - offset)

    reader = nbt.NBTReader(value, little_endian=True, offset=offset)
    palette = []
    for _ in range(count):
        name, tag = reader.read_tag()
        palette.append(_palette_entry(tag))
    return palette, reader.offset


def read_indices(value, layout):
    if layout.bits_per_block == 0:
        return numpy.zeros((SUBCHUNK_CELLS,), dtype=numpy.uint32)
    return unpack_indices(value, layout.block_offset, layout.bits_per_block, SUBCHUNK_CELLS)


class SubChunk(object):
    """One decoded block storage of a sub-chunk.

    layout is the SubChunkLayout, palette a list of PaletteEntry and
    indices a 16x16x16 numpy array of raw palette indices, indexed
    [x, z, y]. names is the same grid resolved to block names; cells
    whose index is outside the palette hold None there and have a
    PaletteIndexOutOfRange in errors.

    """
    def __init__(self, layout, palette, indices, format_version=None, y_index=None):
        self.layout = layout
        self.palette = palette
        self.indices = indices.reshape((16, 16, 16))
        self.format_version = format_version
        self.y_index = y_index

        lookup = numpy.empty((len(palette) + 1,), dtype=object)
        lookup[:len(palette)] = [entry.name for entry in palette]
        lookup[len(palette)] = None
        clipped = numpy.minimum(self.indices, len(palette))
        self.names = lookup[clipped]

        self.errors = []
        for x, z, y in numpy.argwhere(self.indices >= len(palette)):
            self.errors.append(PaletteIndexOutOfRange(
                (int(x), int(y), int(z)), int(self.indices[x, z, y]), len(palette)))

    def __repr__(self):
        return "<SubChunk y=%r bits=%d palette=%d>" % (
            self.y_index, self.layout.bits_per_block, len(self.palette))

    def get_index(self, x, y, z):
        return int(self.indices[x, z, y])

    def block(self, x, y, z):
        """Returns the PaletteEntry at local (x, y, z)."""
        index = self.get_index(x, y, z)
        if index >= len(self.palette):
            raise PaletteIndexOutOfRange((x, y, z), index, len(self.palette))
        return self.palette[index]

    def block_name(self, x, y, z):
        return self.block(x, y, z).name


def _decode_layer(value, header, layer_offset):
    layout = setup_block_storage(value, layer_offset)
    indices = read_indices(value, layout)
    palette, end = read_palette(value, layout)
    return SubChunk(layout, palette, indices, header.format_version, header.y_index), end


def decode_subchunk(value):
    """Decodes the first block storage of a SubChunkPrefix value and
    returns it as a SubChunk.

    Raises UnsupportedSubchunkVersion, UnsupportedPaletteWidth, Truncated
    or an NBT error. Out of range palette indices are not raised here,
    they are collected per cell in SubChunk.errors.

    """
    header = read_subchunk_header(value)
    return _decode_layer(value, header, header.layer_offset)[0]


def decode_subchunk_layers(value):
    """Decodes every block storage of a SubChunkPrefix value. The second
    storage, when present, usually holds water for waterlogged blocks.

    Returns a list of SubChunk.

    """
    header = read_subchunk_header(value)
    layers = []
    offset = header.layer_offset
    for _ in range(header.storage_count):
        layer, offset = _decode_layer(value, header, offset)
        layers.append(layer)
    return layers
