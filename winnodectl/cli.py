import logging
import sys
from typing import Optional

import typer

from winnodectl.commands import configure, run, status, userdata
from winnodectl.config import get_config, set_config, OperatorConfig
from winnodectl.logging import setup_logging
from winnodectl.utils import redact_sensitive_data

app = typer.Typer(help="Configure Windows instances as cluster worker nodes.")

debug_mode = False

app.command("run")(run.run_operator)
app.command("configure")(configure.configure_instance)
app.command("userdata")(userdata.show_user_data)
app.add_typer(status.app, name="status", help="Inspect Windows nodes and the operator status")


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
):
    """winnodectl - Windows node configuration operator."""
    global debug_mode
    debug_mode = debug
    if config:
        set_config(OperatorConfig.load(config))
    cfg = get_config()
    setup_logging(debug, cfg.logging.level, cfg.logging.file, cfg.logging.max_size_mb, cfg.logging.backup_count)
    if debug:
        logging.debug("Debug mode enabled")
        logging.debug(f"Configuration: {redact_sensitive_data(cfg.dict())}")


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if debug_mode:
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)
