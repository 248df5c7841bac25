import os
from textwrap import dedent

import pytest

from nginx_testing.exceptions import NginxConfPatchError
from nginx_testing.templating import (
    CONFIG_PATCH,
    ConfigParams,
    adjust_config,
    count_needed_ports,
    is_master_process_enabled,
    render_placeholders,
)

MINIMAL_CONFIG = dedent(
    """\
    events {
    }
    http {
      server {
        listen 8080;
      }
    }
    """
)

PARAMS = ConfigParams(
    bind_address="127.0.0.2",
    config_path="/home/joe/project/nginx.conf",
    modules={},
    ports=[8080],
    work_dir="/tmp/nginx-testing",
)


# --- Compatibility Patch Tests ---


def test_adjust_config_adds_compat_directives() -> None:
    expected = dedent(
        """\
        events {
        }
        http {
          server {
            listen 8080;
          }
          access_log access.log;
          client_body_temp_path client_body_temp;
          proxy_temp_path proxy_temp;
          fastcgi_temp_path fastcgi_temp;
          uwsgi_temp_path uwsgi_temp;
          scgi_temp_path scgi_temp;
        }
        daemon off;
        pid nginx.pid;
        master_process off;
        error_log stderr info;"""
    )
    assert adjust_config(MINIMAL_CONFIG, PARAMS).strip() == expected


def test_adjust_config_skips_unavailable_modules() -> None:
    """Verify temp path directives of modules built without are not added."""
    patch = [op for op in CONFIG_PATCH if op.if_module]
    modules = {op.if_module: "without" for op in patch}
    result = adjust_config(MINIMAL_CONFIG, PARAMS.model_copy(update={"modules": modules}))

    for op in patch:
        assert op.path.rsplit("/", 1)[-1] not in result


def test_adjust_config_skips_dynamic_modules() -> None:
    result = adjust_config(
        MINIMAL_CONFIG, PARAMS.model_copy(update={"modules": {"http_proxy": "with-dynamic"}})
    )
    assert "proxy_temp_path" not in result
    assert "fastcgi_temp_path fastcgi_temp;" in result


def test_adjust_config_keeps_user_directives() -> None:
    source = dedent(
        """\
        daemon on;
        master_process on;
        pid /run/nginx.pid;
        error_log stderr warn;
        http {
          access_log misc.log misc;
          client_body_temp_path cache/body;
          proxy_temp_path cache/proxy;
          fastcgi_temp_path cache/fastcgi;
          uwsgi_temp_path cache/uwsgi;
          scgi_temp_path cache/scgi;
        }
        """
    )
    expected = dedent(
        """\
        master_process on;
        error_log stderr warn;
        http {
          access_log misc.log misc;
          client_body_temp_path cache/body;
          proxy_temp_path cache/proxy;
          fastcgi_temp_path cache/fastcgi;
          uwsgi_temp_path cache/uwsgi;
          scgi_temp_path cache/scgi;
        }
        daemon off;
        pid nginx.pid;"""
    )
    assert adjust_config(source, PARAMS).strip() == expected


def test_adjust_config_without_http_context_fails() -> None:
    """The compat patch needs an http context to add access_log into."""
    with pytest.raises(NginxConfPatchError):
        adjust_config("events {\n}\n", PARAMS)


# --- Placeholder Tests ---


@pytest.mark.parametrize(
    "placeholder, expected",
    [
        ("__ADDRESS__:__PORT__", "127.0.0.2:8080"),
        ("__CONFDIR__", "/home/joe/project"),
        ("__CWD__", os.getcwd().replace("\\", "/")),
        ("__WORKDIR__", "/tmp/nginx-testing"),
        ("__WORKDIR__/__WORKDIR__", "/tmp/nginx-testing//tmp/nginx-testing"),
        ("__WORKDIR__/root", "/tmp/nginx-testing/root"),
        ("__PORT__", "8080"),
        ("127.0.0.1:__PORT__", "127.0.0.1:8080"),
        ("__PORT_0__", "8080"),
        ("__PORT_1__", "8081"),
        ("__PORT_2__", "8090"),
    ],
)
def test_adjust_config_replaces_placeholders(placeholder: str, expected: str) -> None:
    source = f"http {{\n  directive {placeholder};\n}}\n"
    params = PARAMS.model_copy(update={"ports": [8080, 8081, 8090]})

    assert f"directive {expected};" in adjust_config(source, params)


def test_render_placeholders_leaves_unknown_verbatim() -> None:
    source = "root __NOPE__; listen __PORT_3__; x __ADDRESS__X;"
    result = render_placeholders(source, PARAMS)
    assert result == "root __NOPE__; listen __PORT_3__; x __ADDRESS__X;"


@pytest.mark.parametrize(
    "config, expected",
    [
        ("daemon off;", 0),
        ("listen __PORT__;", 1),
        ("listen __PORT_0__; listen __PORT__;", 1),
        ("listen __PORT__; listen __PORT_2__;", 3),
        ("listen __PORT_9__;", 10),
        ("listen __PORTS__;", 0),
    ],
)
def test_count_needed_ports(config: str, expected: int) -> None:
    assert count_needed_ports(config) == expected


@pytest.mark.parametrize(
    "config, expected",
    [
        ("daemon off;\n", True),
        ("master_process on;\n", True),
        ("master_process off;\n", False),
        ("master_process off;\nmaster_process on;\n", True),
        ('master_process "off";\n', False),
    ],
)
def test_is_master_process_enabled(config: str, expected: bool) -> None:
    assert is_master_process_enabled(config) is expected
