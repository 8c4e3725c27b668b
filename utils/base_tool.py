import typing


def escape_bytes(data: bytes) -> str:
    """printable ascii is kept, everything else becomes \\xNN"""
    buf = []
    for ch in data:
        if 0x20 <= ch <= 0x7e and ch != 0x5c:
            buf.append(chr(ch))
        else:
            buf.append('\\x%02x' % ch)
    return ''.join(buf)


def safe_str(host, offset: int, max_size: int = 4096) -> typing.Tuple[typing.Optional[str], int]:
    """read a NUL terminated string

    Arguments:
        host {Host} -- binary to read from
        offset {int} -- address of the first char

    Returns:
        (str, length) -- length is -1 if no terminator was found within max_size
    """
    buf = bytearray()
    chunk = 64
    while len(buf) < max_size:
        data = host.read(offset + len(buf), chunk)
        if len(data) == 0:
            break
        end = data.find(b'\x00')
        if end >= 0:
            buf += data[:end]
            if len(buf) > max_size:
                break
            return escape_bytes(bytes(buf)), len(buf)
        buf += data
    if len(buf) == 0:
        return None, -1
    return escape_bytes(bytes(buf[:max_size])), -1


def safe_bin(host, offset: int, size: int) -> typing.Optional[bytes]:
    buf = host.read(offset, size)
    if len(buf) != size:
        return None
    return buf
