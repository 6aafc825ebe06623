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

import numpy

from .errors import Truncated

"""
Routines for pulling packed little-endian bit fields out of byte buffers.

read_bits() reads a single field. unpack_indices() does the same job
for a whole block storage at once with numpy, which is what the
sub-chunk decoder uses.

"""


def _check_span(buffer, bit_offset, bit_length):
    if bit_length < 1 or bit_length > 32:
        raise ValueError("bit_length must be between 1 and 32, got %r" % bit_length)
    if bit_offset < 0:
        raise ValueError("bit_offset must not be negative, got %r" % bit_offset)
    needed = (bit_offset + bit_length + 7) // 8
    if needed > len(buffer):
        raise Truncated(bit_offset // 8, needed - bit_offset // 8,
                        max(0, len(buffer) - bit_offset // 8))


def read_bit(buffer, bit_number):
    return (buffer[bit_number // 8] >> (bit_number % 8)) & 1


def read_bits(buffer, bit_offset, bit_length):
    """Returns the unsigned integer stored in bit_length bits of buffer,
    starting at bit_offset. Bits are numbered least significant first
    within each byte, and a field may cross byte boundaries.

    Raises Truncated if the field runs past the end of buffer.

    """
    _check_span(buffer, bit_offset, bit_length)

    if bit_length <= 8:
        byte_start = bit_offset // 8
        byte_low = buffer[byte_start]
        # the high byte is only missing when the field fits in the low one
        if byte_start + 1 < len(buffer):
            byte_high = buffer[byte_start + 1]
        else:
            byte_high = 0
        value = (byte_low | (byte_high << 8)) >> (bit_offset % 8)
        return value & ((1 << bit_length) - 1)

    result = 0
    for b in range(bit_length):
        if read_bit(buffer, bit_offset + b):
            result |= 1 << b
    return result


def word_layout(bits_per_block, count=4096):
    """Returns (blocks_per_word, word_count) for count fields of
    bits_per_block bits packed into 32-bit words, none straddling a word.
    """
    blocks_per_word = 32 // bits_per_block
    word_count = (count + blocks_per_word - 1) // blocks_per_word
    return blocks_per_word, word_count


def unpack_indices(buffer, offset, bits_per_block, count=4096):
    """Unpacks count fields of bits_per_block bits from the little-endian
    32-bit words starting at offset. Field i lives in word
    i // blocks_per_word, at bit (i % blocks_per_word) * bits_per_block.

    Returns a numpy uint32 array of length count.

    """
    blocks_per_word, word_count = word_layout(bits_per_block, count)
    nbytes = word_count * 4
    if offset + nbytes > len(buffer):
        raise Truncated(offset, nbytes, max(0, len(buffer) - offset))

    words = numpy.frombuffer(buffer, dtype='<u4', count=word_count, offset=offset)
    words = words.astype(numpy.uint32)
    result = numpy.zeros((count,), dtype=numpy.uint32)
    mask = numpy.uint32((1 << bits_per_block) - 1)

    for i in range(blocks_per_word):
        j = (count + blocks_per_word - 1 - i) // blocks_per_word
        result[i::blocks_per_word] = (words[:j] >> numpy.uint32(bits_per_block * i)) & mask

    return result
