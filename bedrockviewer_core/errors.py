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

"""
Exceptions raised by the decoding layer. Everything derives from
DecodeError so that a world scan can catch one type per record and keep
going.

"""


class DecodeError(Exception):
    pass


class Truncated(DecodeError):
    """A read would run past the end of the buffer."""
    def __init__(self, offset, wanted, available):
        self.offset = offset
        self.wanted = wanted
        self.available = available
        super(Truncated, self).__init__(
            "wanted %d bytes at offset %d, only %d available"
            % (wanted, offset, available))


class InvalidTag(DecodeError):
    def __init__(self, tag, offset):
        self.tag = tag
        self.offset = offset
        super(InvalidTag, self).__init__(
            "invalid tag type %d at offset %d" % (tag, offset))


class RecursionLimitExceeded(DecodeError):
    def __init__(self, depth, offset):
        self.depth = depth
        self.offset = offset
        super(RecursionLimitExceeded, self).__init__(
            "nesting deeper than %d at offset %d" % (depth, offset))


class UnsupportedSubchunkVersion(DecodeError):
    def __init__(self, version):
        self.version = version
        super(UnsupportedSubchunkVersion, self).__init__(
            "unsupported sub-chunk version 0x%02x" % version)


class UnsupportedPaletteWidth(DecodeError):
    def __init__(self, version):
        self.version = version
        super(UnsupportedPaletteWidth, self).__init__(
            "unsupported storage layer version 0x%02x" % version)


class PaletteIndexOutOfRange(DecodeError):
    """A packed cell refers past the end of its palette. Raised for a
    single cell; the rest of the sub-chunk stays usable.
    """
    def __init__(self, cell, index, palette_size):
        self.cell = cell
        self.index = index
        self.palette_size = palette_size
        super(PaletteIndexOutOfRange, self).__init__(
            "cell %r has palette index %d, palette holds %d entries"
            % (cell, index, palette_size))


class UnknownDimensionId(DecodeError):
    """Warning-level: a chunk key names a dimension we don't know about."""
    def __init__(self, dimension_id):
        self.dimension_id = dimension_id
        super(UnknownDimensionId, self).__init__(
            "unknown dimension id 0x%x" % dimension_id)
