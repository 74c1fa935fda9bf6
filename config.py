"""
QuizLink
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import dataclasses
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import tomlkit
import tomlkit.exceptions
import voluptuous.error
from voluptuous import Schema, Required, Optional as OptionalKey, All, Range, Length, Coerce

DEFAULT_USER_AGENT = ("Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
                      "Chrome/120.0.0.0 Safari/537.36")


class ConfigurationLoadError(Exception): pass


@dataclasses.dataclass(frozen=True)
class ChallengeTimings:
    """seconds"""
    start: float = 5.0
    ready: float = 5.0
    leaderboard: float = 5.0
    close: float = 5.0
    answer_fallback: float = 120.0
    settle: float = 0.3


@dataclasses.dataclass(frozen=True)
class ClientOptions:
    auto_continue: bool = True
    full_score: bool = False
    log_messages: bool = False
    disabled_events: frozenset = frozenset()
    request_timeout: float = 10.0
    http_timeout: float = 10.0
    timings: ChallengeTimings = ChallengeTimings()
    team_retries: int = 1
    default_team: tuple = ("Player 1", "Player 2", "Player 3", "Player 4")
    api_base: str = "https://kahoot.it"
    websocket_base: str = "wss://kahoot.it/cometd"
    user_agent: str = DEFAULT_USER_AGENT
    screen: tuple = (1920, 1080)

    def with_changes(self, **changes) -> "ClientOptions":
        return dataclasses.replace(self, **changes)

    def with_timings(self, **changes) -> "ClientOptions":
        return dataclasses.replace(self, timings=dataclasses.replace(self.timings, **changes))


_seconds = All(Coerce(float), Range(min=0))


class Config:
    config: tomlkit.TOMLDocument
    config_opened: bool = False

    def __init__(self, config_location: Path):
        self.config_location = config_location

        self.config_schema = Schema({
            Required('client'): {
                OptionalKey('auto_continue'): bool,
                OptionalKey('full_score'): bool,
                OptionalKey('log_messages'): bool,
                OptionalKey('disabled_events'): [str],
                OptionalKey('request_timeout'): _seconds,
                OptionalKey('http_timeout'): _seconds,
                OptionalKey('team_retries'): All(int, Range(min=0, max=10)),
                OptionalKey('default_team'): All([All(str, Length(min=1))], Length(min=1)),
                OptionalKey('api_base'): All(str, Length(min=1)),
                OptionalKey('websocket_base'): All(str, Length(min=1)),
                OptionalKey('user_agent'): All(str, Length(min=1)),
                OptionalKey('screen'): All([All(int, Range(min=1))], Length(min=2, max=2)),
                OptionalKey('timings'): {
                    OptionalKey(field.name): _seconds for field in dataclasses.fields(ChallengeTimings)
                },
            }
        })

    async def initialize(self):
        try:
            async with aiofiles.open(self.config_location, 'r') as config_file:
                file_data = await config_file.read()
                self.config = tomlkit.parse(file_data)
                logging.debug("Loaded Configuration without toml format error")
                logging.debug("Validating against Schema.")
                self.config_schema(self.config.unwrap())
                self.config_opened = True
                logging.debug("Validated against Schema.")
        except FileNotFoundError as e:
            logging.exception(e)
            logging.warning(
                f"Could not find {self.config_location}. Copy from .example/config.toml to {self.config_location}")
            raise ConfigurationLoadError() from e
        except IOError as e:
            logging.exception(e)
            logging.warning(f"Could not open file {self.config_location}")
            raise ConfigurationLoadError() from e
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} is invalid")
            raise ConfigurationLoadError() from e
        except voluptuous.error.MultipleInvalid as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} does not match expected format")
            logging.warning(f"Issue configuration item: {e.path}")
            raise ConfigurationLoadError() from e

        logging.info(f"Configuration loaded.")

    def options(self, base: Optional[ClientOptions] = None) -> ClientOptions:
        if not self.config_opened:
            raise ConfigurationLoadError("Configuration has not been loaded")
        client = self.config_schema(self.config.unwrap())["client"]
        options = base or ClientOptions()
        timings = client.pop("timings", {})
        if "disabled_events" in client:
            client["disabled_events"] = frozenset(client["disabled_events"])
        for key in ("default_team", "screen"):
            if key in client:
                client[key] = tuple(client[key])
        options = options.with_changes(**client)
        if timings:
            options = options.with_timings(**timings)
        return options
