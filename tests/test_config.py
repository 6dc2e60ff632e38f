import tempfile
import unittest
from pathlib import Path

from valheim_lifecycle.core.access_lists import parse_player_ids
from valheim_lifecycle.core.config import load_settings
from valheim_lifecycle.core.env_config import EnvConfig
from valheim_lifecycle.core.errors import ConfigError
from valheim_lifecycle.state import TASK_BACKUP, TASK_UPDATE


class EnvConfigTests(unittest.TestCase):
    def test_reads_basic_values(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            conf = root / "lifecycle.env"
            conf.write_text(
                "\n".join(
                    [
                        "# comment",
                        "WORLD_NAME=TestWorld",
                        "SERVER_PORT=2460",
                        "BACKUPS_MAX_AGE=1.5",
                        "export BACKUPS_DIRECTORY=./backups",
                        "SERVER_NAME='Quoted Name'",
                    ]
                ),
                encoding="utf-8",
            )
            cfg = EnvConfig(conf, root, environ={})
            self.assertEqual(cfg.get_str("WORLD_NAME", "x"), "TestWorld")
            self.assertEqual(cfg.get_int("SERVER_PORT", 0), 2460)
            self.assertEqual(cfg.get_float("BACKUPS_MAX_AGE", 0.0), 1.5)
            self.assertEqual(cfg.get_path("BACKUPS_DIRECTORY", root / "none"), root / "backups")
            self.assertEqual(cfg.get_str("SERVER_NAME", ""), "Quoted Name")

    def test_environment_wins_over_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            conf = Path(tmp) / "lifecycle.env"
            conf.write_text("WORLD_NAME=FromFile\n", encoding="utf-8")
            cfg = EnvConfig(conf, tmp, environ={"WORLD_NAME": "FromEnv"})
            self.assertEqual(cfg.get_str("WORLD_NAME", "x"), "FromEnv")

    def test_bad_numbers_and_bools_keep_defaults(self):
        cfg = EnvConfig(environ={"A": "abc", "B": "-4", "C": "maybe", "D": "off"})
        self.assertEqual(cfg.get_int("A", 7), 7)
        self.assertEqual(cfg.get_int("B", 7, minimum=0), 0)
        self.assertTrue(cfg.get_bool("C", True))
        self.assertFalse(cfg.get_bool("D", True))


class LoadSettingsTests(unittest.TestCase):
    def test_defaults(self):
        settings = load_settings(environ={})
        self.assertEqual(settings.server_port, 2456)
        self.assertEqual(settings.query_port, 2457)
        self.assertEqual(settings.backups_directory, Path("/config/backups"))
        self.assertEqual(settings.worlds_dir, Path("/config/worlds_local"))
        self.assertTrue(settings.update_on_start)
        self.assertEqual(settings.update_timeout, 900.0)
        entries = settings.schedule_entries()
        self.assertEqual([entry.kind for entry in entries], [TASK_BACKUP])

    def test_schedule_entries_follow_flags(self):
        settings = load_settings(
            environ={
                "UPDATE_CRON": "*/15 * * * *",
                "UPDATE_IF_IDLE": "false",
                "BACKUPS_ENABLED": "false",
            }
        )
        entries = settings.schedule_entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].kind, TASK_UPDATE)
        self.assertFalse(entries[0].only_if_idle)
        self.assertEqual(entries[0].cron_expression, "*/15 * * * *")

    def test_invalid_cron_names_the_variable(self):
        with self.assertRaises(ConfigError) as caught:
            load_settings(environ={"BACKUPS_CRON": "61 * * * *"})
        self.assertIn("BACKUPS_CRON", str(caught.exception))

    def test_invalid_supervisor_mode(self):
        with self.assertRaises(ConfigError):
            load_settings(environ={"SUPERVISOR_MODE": "systemd"})

    def test_invalid_ready_marker(self):
        with self.assertRaises(ConfigError):
            load_settings(environ={"READY_LOG_MARKER": "(unclosed"})

    def test_access_list_ids(self):
        settings = load_settings(environ={"ADMINLIST_IDS": "111, 222 111", "BANNEDLIST_IDS": ""})
        self.assertEqual(parse_player_ids(settings.access_lists["admin"]), ["111", "222"])
        self.assertEqual(parse_player_ids(settings.access_lists["banned"]), [])

    def test_env_file_paths_resolve_relative_to_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            conf = Path(tmp) / "lifecycle.env"
            conf.write_text("CONFIG_DIR=data\nBACKUPS_MAX_COUNT=4\nTZ=Not/AZone\n", encoding="utf-8")
            settings = load_settings(environ={"LIFECYCLE_ENV_FILE": str(conf)})
            self.assertEqual(settings.config_dir, Path(tmp) / "data")
            self.assertEqual(settings.worlds_dir, Path(tmp) / "data" / "worlds_local")
            self.assertEqual(settings.retention_policy.max_count, 4)
            self.assertEqual(str(settings.display_tz), "UTC")


if __name__ == "__main__":
    unittest.main()
