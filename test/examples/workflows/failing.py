PREFIX = "build-test"
KINDS = ["text"]


def get_axes():
    return [("os", ["ubuntu", "windows", "macos"])]


def build(spec):
    if spec["os"] == "windows":
        raise RuntimeError("path too long")
    return [("text", f"built on {spec['os']}")]
