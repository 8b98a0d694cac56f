# Copyright 2024-2025 The vLLM Production Stack Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import argparse
import logging

from env_config import LOG_LEVELS, load_config_from_env

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the certroute engine. Configuration is loaded from environment variables."
    )

    # Basic server settings (override environment variables)
    server_group = parser.add_argument_group(
        "Server Settings", "Basic server configuration (overrides environment variables)"
    )
    server_group.add_argument(
        "--host", type=str, default=None, help="The host to run the server on."
    )
    server_group.add_argument(
        "--port", type=int, default=None, help="The port to run the server on."
    )
    server_group.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=LOG_LEVELS,
        help="Log level for uvicorn and the engine.",
    )
    server_group.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory holding the lifecycle store, credentials and key material.",
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0",
        help="Show version and exit",
    )
    return parser


def parse_args(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load configuration from environment variables
    logger.info("Loading configuration from environment variables")
    config = load_config_from_env()

    # Override config with command line arguments if provided
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.data_dir is not None:
        config.data_dir = args.data_dir

    errors = config.validate()
    if errors:
        parser.error("; ".join(errors))

    # Store the config object for use by the application
    args.config_obj = config
    return args
