"""Shared bits for the test workflows, not a workflow itself."""


def get_axes():
    return [("os", ["ubuntu"])]
