"""Airflow DAG (example) to run the KH03 ETL quarterly."""

from datetime import datetime
from airflow import DAG
from airflow.operators.bash import BashOperator

with DAG(
    dag_id="kh03_overnight_beds_etl",
    start_date=datetime(2024, 1, 1),
    schedule="@quarterly",
    catchup=False,
    max_active_runs=1,
    tags=["nhs", "kh03", "beds", "etl"],
) as dag:

    run_etl = BashOperator(
        task_id="run_kh03_etl",
        bash_command="python -m kh03_etl --out /opt/airflow/data --from-quarter '2010-11 Q3' --skip-failed",
    )

    run_etl
