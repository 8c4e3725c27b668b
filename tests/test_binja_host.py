from unittest import mock

import pytest

binaryninja = pytest.importorskip("binaryninja")

from host.binja import BinaryNinjaHost


def make_view():
    view = mock.MagicMock(spec=binaryninja.BinaryView)
    view.create_user_function.return_value = None
    view.get_function_at.return_value = None
    return view


def test_create_user_function_failure():
    view = make_view()
    host = BinaryNinjaHost(view)
    with pytest.raises(RuntimeError, match="0x1000"):
        host.create_user_function(0x1000)
    view.create_user_function.assert_called_once_with(0x1000, view.platform)
