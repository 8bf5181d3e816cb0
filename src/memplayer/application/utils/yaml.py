import yaml  # type: ignore


class _LiteralDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line strings as `|-` block scalars."""


def _str_representer(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_LiteralDumper.add_representer(str, _str_representer)
