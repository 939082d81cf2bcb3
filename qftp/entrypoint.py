#!/usr/bin/env python3
"""
Entry point for the qftp browser client.

Configures logging and replaces the current process with
``streamlit run`` on the bundled UI script.
"""

import argparse
import logging
import os
import subprocess
import sys

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("qftp-ui")

APP_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'ui', 'app.py')


def build_command(host: str, port: int, log_level: str = 'info'):
    return [
        'streamlit',
        'run',
        APP_PATH,
        f'--server.port={port}',
        f'--server.address={host}',
        f'--logger.level={log_level}',
        '--client.showErrorDetails=true',
        '--browser.gatherUsageStats=false',
    ]


def start_streamlit_client(host: str = '0.0.0.0', port: int = 8501, log_level: str = 'info'):
    logger.info(f"Starting Streamlit FTP Client UI on {host}:{port}...")
    cmd = build_command(host, port, log_level)

    try:
        os.execvp(cmd[0], cmd)
    except OSError as e:
        logger.error(f"Failed to exec Streamlit: {e}")
        # Fallback to subprocess.run for better diagnostics
        try:
            subprocess.run([sys.executable, '-m'] + cmd, check=True)
        except subprocess.CalledProcessError as e2:
            logger.error(f"Streamlit exited with error code {e2.returncode}")
            sys.exit(e2.returncode)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="qftp browser client")
    parser.add_argument("--host", default=os.getenv("QFTP_UI_HOST", "0.0.0.0"), help="Address Streamlit binds to")
    parser.add_argument("--port", type=int, default=int(os.getenv("QFTP_UI_PORT", "8501")), help="Port Streamlit listens on")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    if not os.path.exists(APP_PATH):
        logger.error(f"✗ Missing file: {APP_PATH}")
        sys.exit(1)
    start_streamlit_client(args.host, args.port, args.log_level)


if __name__ == '__main__':
    main()
