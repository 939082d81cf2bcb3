import logging
import os
import shlex
import tempfile
import traceback
from datetime import datetime, timezone

import streamlit as st

from qftp.core.config import ClientConfig
from qftp.core.errors import FtpError
from qftp.core.stat_record import StatRecord
from qftp.ui.console import COMMANDS, ConsoleError, parse_line
from qftp.ui.runner import SessionRunner

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


st.set_page_config(page_title="qftp Client UI", layout="wide")


def show_result(verb: str, out):
    if isinstance(out, list) and out and isinstance(out[0], StatRecord):
        st.dataframe([
            {
                "name": r.filename,
                "type": "dir" if r.is_directory else "link" if r.is_symbolic_link else "file",
                "permissions": r.permissions,
                "owner": r.owner,
                "group": r.group,
                "size": r.size,
                "modified": datetime.fromtimestamp(r.mtime / 1000, tz=timezone.utc).isoformat(),
                "target": r.link_target or "",
            }
            for r in out
        ])
    elif isinstance(out, list):
        st.text_area("Listing", value="\n".join(out))
    elif verb == "RETR" and isinstance(out, str) and os.path.exists(out):
        with open(out, "rb") as f:
            st.download_button("Download", data=f.read(), file_name=os.path.basename(out))
    elif verb == "MDTM":
        st.write(datetime.fromtimestamp(out / 1000, tz=timezone.utc).isoformat())
    else:
        st.success(f"{verb}: {out}")


# --- UI ----------------------------------------------------------------------
st.title("qftp — Streamlit Client")

defaults = ClientConfig.from_env()

with st.sidebar:
    st.header("Connection")
    host = st.text_input("Host", value=defaults.host)
    port = st.number_input("Port", min_value=1, max_value=65535, value=defaults.port)
    user = st.text_input("User", value=defaults.user)
    password = st.text_input("Password", value=defaults.password, type="password")
    timeout = st.number_input("Timeout (s)", min_value=1.0, max_value=60.0, value=defaults.timeout)
    if st.button("Connect"):
        logger.info(f"[UI] Connect button clicked: {host}:{port}")
        runner = st.session_state.get("runner")
        if runner is not None:
            runner.close()
        runner = SessionRunner()
        try:
            config = ClientConfig(host=host, port=int(port), user=user, password=password,
                                  timeout=float(timeout), pasv_port=defaults.pasv_port,
                                  base_dir=defaults.base_dir)
            greeting = runner.open(config)
            st.session_state["runner"] = runner
            st.info(f"{greeting.code} — {greeting.message}")
            st.success(f"Connected to {host}:{port}")
        except (ConnectionError, FtpError, OSError) as e:
            logger.error(f"[UI] Connection failed: {e}")
            runner.close()
            st.session_state["runner"] = None
            st.error(f"Connection failed: {e}")
    if st.button("Disconnect"):
        runner = st.session_state.get("runner")
        if runner:
            runner.close()
            st.session_state["runner"] = None
            st.info("Disconnected")


runner = st.session_state.get("runner")
col1, col2 = st.columns([3, 1])

with col1:
    st.subheader("Terminal")
    cmd = st.text_input("Command", placeholder="e.g. LIST /pub", key="cmd_input")
    cmd_run = st.button("Run")
    uploaded_file = st.file_uploader("Upload file for STOR", key="upload_file")

    if cmd_run and cmd:
        logger.info(f"[UI] Command executed: {cmd}")
        if runner is None:
            st.error("Not connected. Connect first.")
        else:
            try:
                verb, _, args = parse_line(cmd)
                line = cmd
                if verb == "STOR" and uploaded_file is not None:
                    # STOR remote_name with the file from the uploader
                    local_path = os.path.join(tempfile.gettempdir(), f"qftp_{uploaded_file.name}")
                    with open(local_path, "wb") as f:
                        f.write(uploaded_file.getbuffer())
                    line = f"STOR {shlex.quote(local_path)} {shlex.quote(args[-1])}"
                elif verb == "RETR" and len(args) == 1:
                    # RETR remote_name into the temp dir, offered as a download
                    local_path = os.path.join(tempfile.gettempdir(), f"qftp_{os.path.basename(args[0])}")
                    line = f"RETR {shlex.quote(args[0])} {shlex.quote(local_path)}"
                with st.spinner(f"Running {verb}..."):
                    out = runner.execute(line)
                show_result(verb, out)
            except ConsoleError as e:
                st.error(str(e))
                if e.suggestion:
                    st.write(f"Try with {e.suggestion}")
            except (FtpError, OSError) as e:
                st.error(f"Error: {e}")
            except Exception:
                logger.error(f"[UI] Unhandled exception: {traceback.format_exc()}")
                st.error(f"Unhandled exception:\n{traceback.format_exc()}")

    with st.expander("Commands"):
        st.write(", ".join(sorted(COMMANDS)))

with col2:
    st.subheader("History")
    if runner is None or runner.client is None:
        st.info("No history: not connected")
    else:
        client = runner.client
        if st.button("Clear History"):
            client.clear_history()
            st.rerun()
        for entry in reversed(client.get_history()[-100:]):
            t = entry.get("time")
            time_str = t.isoformat() if isinstance(t, datetime) else str(t)
            with st.expander(f"{time_str} — {entry.get('command')}"):
                if entry.get("data") is not None:
                    st.text_area("Data", value=str(entry.get("data")), height=150)
                if entry.get("error"):
                    st.error(entry.get("error"))


st.markdown("---")
st.caption("qftp Streamlit UI — queued commands, passive transfers and history.")
