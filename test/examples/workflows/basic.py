PREFIX = "build-test"


def get_axes():
    return [("os", ["ubuntu", "macos"]), ("python", ["3.10", "3.12"])]


def build(spec):
    return [("text", f"built on {spec['os']}"), ("json", {"python": spec["python"]})]
