import io  # Required for Excel export

import pandas as pd

from replenishment_planning import get_critical_replenishment_items, get_replenishment_summary_by_vendor

# --- Constants ---
JOB_SUMMARY_COLUMNS = [
    'job_id', 'job_type', 'status', 'trigger_id', 'started_at', 'completed_at',
    'duration_seconds', 'stores_processed', 'products_analyzed', 'orders_generated',
    'total_cost', 'success_rate', 'error_count', 'alert_count',
]

# --- Data Export Function ---

def get_filtered_data_as_excel(dfs_to_export_dict):
    """
    Processes a dictionary of dataframes
    and returns an Excel file as a bytes object for download.
    The dictionary format is { "sheet_name": (dataframe, include_index_bool) }

    Empty or non-DataFrame entries are skipped. Datetime columns are written
    as timezone-naive 'YYYY-MM-DD HH:MM' strings.
    """
    output = io.BytesIO()

    with pd.ExcelWriter(output, engine='xlsxwriter') as writer:
        for sheet_name, (df, include_index) in dfs_to_export_dict.items():
            if not isinstance(df, pd.DataFrame) or df.empty:
                continue

            # Only copy if a datetime column needs converting
            df_to_export = df
            datetime_cols = [col for col in df.columns if pd.api.types.is_datetime64_any_dtype(df[col])]
            if datetime_cols:
                df_to_export = df.copy()
                for col in datetime_cols:
                    if df_to_export[col].dt.tz is not None:
                        df_to_export[col] = df_to_export[col].dt.tz_localize(None)
                    df_to_export[col] = df_to_export[col].dt.strftime('%Y-%m-%d %H:%M')

            # Excel limits sheet names to 31 characters
            sheet = sheet_name[:31]
            df_to_export.to_excel(writer, sheet_name=sheet, index=include_index)

            # Auto-adjust column widths
            worksheet = writer.sheets[sheet]
            offset = 1 if include_index else 0
            for idx, col in enumerate(df_to_export.columns):
                series = df_to_export[col]
                max_len = max(
                    series.astype(str).map(len).max(),  # Data max len
                    len(str(series.name))  # Header len
                ) + 2
                worksheet.set_column(idx + offset, idx + offset, max_len)

    return output.getvalue()


# --- Job Result Reporting ---

def _naive(value):
    """Timezone-naive Timestamp (Excel cannot store offsets)."""
    if value is None:
        return pd.NaT
    ts = pd.Timestamp(value)
    return ts.tz_localize(None) if ts.tzinfo is not None else ts


def job_history_to_dataframe(results) -> pd.DataFrame:
    """
    One summary row per ScheduledJobResult.

    Args:
        results: iterable of ScheduledJobResult

    Returns:
        DataFrame with JOB_SUMMARY_COLUMNS
    """
    rows = []
    for result in results:
        rows.append({
            'job_id': result.job_id,
            'job_type': result.job_type.value,
            'status': result.status.value,
            'trigger_id': result.trigger_id,
            'started_at': _naive(result.started_at),
            'completed_at': _naive(result.completed_at),
            'duration_seconds': result.duration_seconds,
            'stores_processed': result.stores_processed,
            'products_analyzed': result.products_analyzed,
            'orders_generated': result.orders_generated,
            'total_cost': round(result.total_cost, 2),
            'success_rate': result.success_rate,
            'error_count': len(result.errors),
            'alert_count': len(result.alerts),
        })
    return pd.DataFrame(rows, columns=JOB_SUMMARY_COLUMNS)


def job_errors_to_dataframe(results) -> pd.DataFrame:
    rows = [
        {
            'job_id': result.job_id,
            'store_id': error.store_id,
            'product_id': error.product_id,
            'severity': error.severity.value,
            'message': error.message,
        }
        for result in results for error in result.errors
    ]
    return pd.DataFrame(rows, columns=['job_id', 'store_id', 'product_id', 'severity', 'message'])


def job_alerts_to_dataframe(results) -> pd.DataFrame:
    rows = [
        {
            'job_id': result.job_id,
            'alert_id': alert.alert_id,
            'alert_type': alert.alert_type,
            'store_id': alert.store_id,
            'product_id': alert.product_id,
            'vendor_id': alert.vendor_id,
            'severity': alert.severity.value,
            'message': alert.message,
        }
        for result in results for alert in result.alerts
    ]
    return pd.DataFrame(rows, columns=['job_id', 'alert_id', 'alert_type', 'store_id', 'product_id',
                                       'vendor_id', 'severity', 'message'])


def export_replenishment_report(results, suggestions_df=None):
    """
    Build the replenishment Excel report.

    Sheets: Job Summary, Errors, Alerts and, when suggestions are given,
    Suggestions, Vendor Summary and Critical Items. Empty sheets are omitted.

    Args:
        results: iterable of ScheduledJobResult
        suggestions_df: optional suggestions DataFrame

    Returns:
        bytes: xlsx file content
    """
    results = list(results)
    sheets = {
        'Job Summary': (job_history_to_dataframe(results), False),
        'Errors': (job_errors_to_dataframe(results), False),
        'Alerts': (job_alerts_to_dataframe(results), False),
    }
    if suggestions_df is not None and not suggestions_df.empty:
        sheets['Suggestions'] = (suggestions_df, False)
        sheets['Vendor Summary'] = (get_replenishment_summary_by_vendor(suggestions_df), False)
        sheets['Critical Items'] = (get_critical_replenishment_items(suggestions_df, top_n=None), False)
    return get_filtered_data_as_excel(sheets)
