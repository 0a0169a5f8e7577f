import io
import os
import time
from urllib.parse import unquote

import requests
import streamlit as st

API_BASE = os.getenv("DOCSPARK_API_BASE", os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")
TARGET_FORMATS = ["pdf", "docx", "txt", "html", "md", "rtf", "csv"]
INPUT_TYPES = ["pdf", "docx", "txt", "html", "htm", "md", "rtf", "csv"]


def _error_message(resp: requests.Response) -> str:
    try:
        return str(resp.json().get("error", resp.text))
    except ValueError:
        return resp.text


def _reset_state():
    for key in [
        "job_id",
        "status",
        "progress",
        "failure_reason",
        "result_bytes",
        "result_name",
        "insights",
        "error",
    ]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    st.session_state["upload_key"] = st.session_state.get("upload_key", 0) + 1


def _start_job(uploaded_file: io.BytesIO, target_format: str, with_insights: bool, consent: bool) -> str | None:
    files = {"file": (uploaded_file.name, uploaded_file.getvalue(), uploaded_file.type or "application/octet-stream")}
    data = {
        "targetFormat": target_format,
        "analysisMode": "convert_plus_insights" if with_insights else "convert_only",
        "analysisConsent": "true" if consent else "false",
    }
    try:
        resp = requests.post(f"{API_BASE}/api/convert", files=files, data=data, timeout=300)
    except requests.RequestException as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code != 201:
        st.session_state["error"] = f"Upload failed ({resp.status_code}): {_error_message(resp)}"
        return None
    return str(resp.json().get("jobId"))


def _poll_status(job_id: str) -> dict[str, object] | None:
    # Short retry window for transient network errors and rate limiting
    max_attempts = 5
    backoff = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            resp = requests.get(f"{API_BASE}/api/jobs/{job_id}", timeout=30)
        except requests.RequestException as e:
            if attempt < max_attempts:
                time.sleep(backoff)
                backoff *= 1.5
                continue
            st.session_state["error"] = f"Status check failed: {e}"
            return None
        if resp.status_code == 200:
            return resp.json()
        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            if attempt < max_attempts:
                time.sleep(float(resp.headers.get("Retry-After", backoff)))
                backoff *= 1.5
                continue
        st.session_state["error"] = f"Status error ({resp.status_code}): {_error_message(resp)}"
        return None
    return None


def _download_result(job_id: str) -> tuple[bytes, str] | None:
    try:
        resp = requests.get(f"{API_BASE}/api/jobs/{job_id}/download", timeout=120)
    except requests.RequestException as e:
        st.session_state["error"] = f"Download failed: {e}"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Download error ({resp.status_code}): {_error_message(resp)}"
        return None
    # Content-Disposition: attachment; filename="report.pdf" or filename*=utf-8''r%C3%A9sum%C3%A9.pdf
    disposition = resp.headers.get("content-disposition", "")
    if "filename*=utf-8''" in disposition:
        name = unquote(disposition.split("filename*=utf-8''")[-1])
    elif "filename=" in disposition:
        name = disposition.split("filename=")[-1].strip('"')
    else:
        name = "converted"
    return resp.content, name


def _fetch_insights(job_id: str) -> dict[str, object] | None:
    try:
        resp = requests.get(f"{API_BASE}/api/jobs/{job_id}/insights", timeout=30)
    except requests.RequestException:
        return None
    return resp.json() if resp.status_code == 200 else None


def _delete_job(job_id: str) -> bool:
    try:
        resp = requests.delete(f"{API_BASE}/api/jobs/{job_id}", timeout=30)
    except requests.RequestException as e:
        st.session_state["error"] = f"Delete failed: {e}"
        return False
    return resp.status_code in (200, 404)


def main() -> None:
    st.set_page_config(page_title="DocSpark", page_icon="📄", layout="centered")
    st.title("📄 DocSpark")
    st.caption(f"API base: {API_BASE}")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload a document",
        type=INPUT_TYPES,
        key=f"uploader-{st.session_state['upload_key']}",
    )
    target_format = st.selectbox("Convert to", TARGET_FORMATS)
    with_insights = st.toggle("Also generate document insights")
    consent = False
    if with_insights:
        consent = st.checkbox("I agree to have this document analysed")

    if uploaded and "job_id" not in st.session_state and st.button("Start Conversion", type="primary"):
        with st.spinner("Uploading and converting..."):
            job_id = _start_job(uploaded, target_format, with_insights, consent)
        if job_id:
            st.session_state["job_id"] = job_id
            st.toast("Job created", icon="✅")

    if "job_id" in st.session_state:
        job_id = st.session_state["job_id"]
        with st.status("Tracking job status...", expanded=True) as status_box:
            text_slot = st.empty()
            prog_slot = st.empty()
            while True:
                data = _poll_status(job_id)
                if not data:
                    status_box.update(label="Status unavailable", state="error")
                    break
                st.session_state["status"] = str(data.get("status", "unknown"))
                st.session_state["progress"] = int(data.get("progress") or 0)
                st.session_state["failure_reason"] = data.get("failureReason")

                text_slot.write(f"Status: {st.session_state['status']}")
                prog_slot.progress(min(max(st.session_state["progress"], 0), 100))

                if st.session_state["status"] == "done":
                    status_box.update(label="Job completed", state="complete")
                    break
                if st.session_state["status"] == "failed":
                    status_box.update(label="Job failed", state="error")
                    break
                time.sleep(1.0)

        if st.session_state.get("status") == "done" and "result_bytes" not in st.session_state:
            result = _download_result(job_id)
            if result is not None:
                st.session_state["result_bytes"], st.session_state["result_name"] = result
            if with_insights:
                st.session_state["insights"] = _fetch_insights(job_id)

        if st.session_state.get("status") == "failed":
            st.error(st.session_state.get("failure_reason") or "Conversion failed. Please try again.")

    if "result_bytes" in st.session_state:
        st.success("Conversion complete!")
        st.download_button(
            label=f"Download {st.session_state['result_name']}",
            data=st.session_state["result_bytes"],
            file_name=st.session_state["result_name"],
        )
        if st.session_state.get("insights"):
            with st.expander("Document insights"):
                st.json(st.session_state["insights"])
        if st.button("Delete from server"):
            if _delete_job(st.session_state["job_id"]):
                st.toast("Job deleted", icon="🗑️")
                _reset_state()
                st.rerun()

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
