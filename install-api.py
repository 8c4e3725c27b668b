#!/usr/bin/env python

import os
import sys
import os.path
import site

try:
    import binaryninja
    print("Binary Ninja API already Installed")
    sys.exit(0)
except ImportError:
    pass

# BN_INSTALL_DIR points at the binary ninja install, the python api lives in its `python` folder
DEFAULT_INSTALL_DIRS = {
    "linux": [os.path.expanduser("~/binaryninja"), "/opt/binaryninja", "/root/binaryninja"],
    "darwin": ["/Applications/Binary Ninja.app/Contents/Resources"],
    "win32": [os.path.join(os.environ.get("ProgramFiles", "C:\\Program Files"), "Vector35", "BinaryNinja")],
}


def candidate_paths():
    install_dir = os.environ.get("BN_INSTALL_DIR")
    if install_dir:
        yield os.path.join(install_dir, "python")
        return
    if sys.platform not in DEFAULT_INSTALL_DIRS:
        print("Unsupported os %s, set BN_INSTALL_DIR" % sys.platform)
        sys.exit(-1)
    for path in DEFAULT_INSTALL_DIRS[sys.platform]:
        yield os.path.join(path, "python")


def validate_path(path):
    try:
        os.stat(path)
    except OSError:
        return False

    old_path = list(sys.path)
    sys.path.append(path)

    try:
        import binaryninja
    except ImportError:
        sys.path = old_path
        return False

    return True


binaryninja_api_path = None
for path in candidate_paths():
    if validate_path(path):
        binaryninja_api_path = path
        break

if binaryninja_api_path is None:
    print("Binary Ninja not found.")
    sys.exit(-1)

import binaryninja
print("Found Binary Ninja core version: {}".format(binaryninja.core_version()))

if hasattr(site, "getsitepackages"):
    install_path = site.getsitepackages()[0]
else:
    install_path = site.getusersitepackages()
binaryninja_pth_path = os.path.join(install_path, 'binaryninja.pth')
with open(binaryninja_pth_path, 'w') as fd:
    fd.write(binaryninja_api_path)

print("Binary Ninja API installed")
