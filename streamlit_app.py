# streamlit_app.py
import streamlit as st
import requests
import pandas as pd

API_BASE = st.secrets.get("api_base", "http://localhost:8000")

MED_COLUMNS = ["name", "dose", "frequency", "route"]
RISK_BADGES = {"low": "🟢 Low", "medium": "🟠 Medium", "high": "🔴 High"}

st.set_page_config(page_title="Medication Safety Check", layout="wide")
st.title("Medication Safety Check — Clinician Dashboard")

# Sidebar patient context + history lookup
with st.sidebar:
    st.header("Patient Context")
    patient_id = st.text_input("Patient ID (for history)", value="")
    age = st.number_input("Age (years)", 0.0, 120.0, 45.0)
    weight = st.number_input("Weight (kg)", 0.0, 300.0, 70.0)
    egfr = st.number_input("Renal function (GFR, mL/min)", 0.0, 200.0, 90.0)
    hepatic = st.selectbox("Hepatic function", ["normal", "mild", "moderate", "severe"])
    allergies = st.text_input("Allergies (comma separated)")
    conditions = st.text_input("Conditions (ICD-10 codes, comma separated)")

    st.markdown("---")
    st.subheader("History")
    history_query = st.text_input("Search patient history (ID)", value=patient_id)
    if st.button("Load History"):
        if not history_query.strip():
            st.warning("Enter a patient ID to search history.")
        else:
            try:
                r = requests.get(f"{API_BASE}/api/v1/history/{history_query}", timeout=30)
                if r.status_code == 200:
                    hist = r.json().get("data", [])
                    if hist:
                        st.success(f"Found {len(hist)} checks for '{history_query}'. Scroll in main UI.")
                    else:
                        st.info("No history found.")
                    st.session_state["history_loaded"] = hist
                else:
                    st.error("History lookup failed: " + r.text)
            except requests.RequestException as e:
                st.error("Could not contact backend: " + str(e))


def build_payload(meds_df: pd.DataFrame) -> dict:
    meds = []
    for row in meds_df.fillna("").to_dict(orient="records"):
        name = str(row.get("name", "")).strip()
        if not name:
            continue
        med = {"name": name, "dose": str(row.get("dose", "")).strip()}
        for key in ("frequency", "route"):
            value = str(row.get(key, "")).strip()
            if value:
                med[key] = value
        meds.append(med)
    return {
        "medications": meds,
        "patientContext": {
            "patientId": patient_id or None,
            "age": float(age),
            "weight": float(weight) if weight else None,
            "renalFunction": float(egfr),
            "hepaticFunction": hepatic,
            "allergies": [a.strip() for a in allergies.split(",") if a.strip()],
            "conditions": [{"code": c.strip()} for c in conditions.split(",") if c.strip()],
        },
    }


# Main layout: left input / right results
col1, col2 = st.columns([1, 1.2])

with col1:
    st.subheader("Medication Orders (editable)")
    meds_df = st.session_state.get(
        "meds_df",
        pd.DataFrame(
            [{"name": "Warfarin", "dose": "5mg", "frequency": "daily", "route": "oral"}],
            columns=MED_COLUMNS,
        ),
    )
    edited_df = st.data_editor(meds_df, num_rows="dynamic", key="meds_editor")

    if st.button("Run Safety Check"):
        payload = build_payload(edited_df)
        if not payload["medications"]:
            st.warning("Add at least one medication.")
        else:
            st.json(payload)
            try:
                r = requests.post(f"{API_BASE}/api/v1/check-medication", json=payload, timeout=60)
                body = r.json()
                if r.status_code != 200 or not body.get("success"):
                    err = body.get("error", {})
                    st.error(f"Safety check failed [{err.get('code')}]: {err.get('message', r.text)}")
                else:
                    st.session_state["meds_df"] = edited_df
                    st.session_state["last_check"] = body["data"]
                    st.success("Safety check complete.")
                    st.rerun()
            except (requests.RequestException, ValueError) as e:
                st.error("Failed to call /api/v1/check-medication: " + str(e))

with col2:
    st.subheader("Latest Safety Check")
    out = st.session_state.get("last_check")
    if out:
        risk = out["overallRisk"]
        st.markdown(
            f"**Overall risk:** {RISK_BADGES.get(risk['level'], risk['level'])} (score {risk['score']})"
        )
        if risk["blocksAdministration"]:
            st.error("⛔ Administration should be blocked pending review.")

        st.markdown("**Interactions**")
        alerts = out["interactions"]["alerts"]
        if alerts:
            for a in alerts:
                st.markdown(f"- **{a['drug1']} + {a['drug2']}** ({a['severity']}): {a.get('description') or ''}")
                if a.get("recommendation"):
                    st.caption(a["recommendation"])
        else:
            st.success("✅ No interactions detected.")

        st.markdown("**Allergy Alerts**")
        alerts = out["allergyAlerts"]["alerts"]
        if alerts:
            for a in alerts:
                st.markdown(f"- **{a['medication']}** vs {a['allergen']} ({a['alertType']}, {a['severity']})")
                st.caption(a["recommendation"])
        else:
            st.success("✅ No allergy alerts.")

        st.markdown("**Contraindications**")
        alerts = out["contraindications"]["alerts"]
        if alerts:
            for a in alerts:
                st.markdown(f"- **{a['medication']}** / {a.get('conditionName') or a['conditionCode']} ({a['type']})")
                st.caption(a["recommendation"])
        else:
            st.success("✅ No contraindications.")

        st.markdown("**Dose Validation**")
        rows = [
            {
                "medication": v["medication"],
                "dose": f"{v['prescribedDose']:g} {v['prescribedUnit']}" if v.get("prescribedDose") is not None else "",
                "range": f"{v['therapeuticRange']['min']:g}-{v['therapeuticRange']['max']:g} {v['therapeuticRange']['unit']}",
                "status": v["status"],
                "warnings": "; ".join(v["warnings"]),
            }
            for v in out["doseValidation"]["validations"]
        ]
        if rows:
            st.dataframe(pd.DataFrame(rows), use_container_width=True)

        st.markdown("**Clinical Guidelines**")
        guidelines = out.get("guidelines", [])
        if guidelines:
            for g in guidelines:
                st.markdown(f"- **{g['guideline']}** ({g['condition']}, {g['applicability']} applicability)")
                st.caption(f"{g['recommendation']} {g['reasoning']}")
        else:
            st.write("No guidelines for the listed conditions.")
    else:
        st.info("No recent check. Enter medications and run a safety check.")

    st.markdown("---")
    st.subheader("Patient History (loaded)")
    history = st.session_state.get("history_loaded", [])
    if history:
        st.dataframe(
            pd.DataFrame(
                [
                    {
                        "date": rec.get("createdAt"),
                        "medications": ", ".join(m.get("name", "") for m in rec.get("medications", [])),
                        "risk": rec.get("riskLevel"),
                        "score": rec.get("riskScore"),
                        "blocked": rec.get("blocksAdministration"),
                        "alert": rec.get("alertStatus") or "",
                    }
                    for rec in history
                ]
            ),
            use_container_width=True,
        )
    else:
        st.write("No history loaded. Use the sidebar to search a patient's history.")
