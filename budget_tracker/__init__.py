import os
from datetime import date
from functools import wraps

from flask import (
    Flask,
    Response,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)

from .aggregation import (
    CALENDAR_PERIODS,
    REPORT_WINDOWS,
    WINDOW_LABELS,
    bucket_by_period,
    bucket_by_window,
    category_breakdown,
    distinct_categories,
    export_csv,
    filter_transactions,
    reconciliation_counts,
    summary_totals,
    transactions_since,
    window_start,
)
from .auth import AuthError, SessionProvider
from .db import DATABASE_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .matching import (
    DEFAULT_STATEMENT_EXTENSIONS,
    BankMatchError,
    StubBankMatcher,
    check_statement_filename,
    mark_result_matched,
    summarize_results,
)
from .models import SUGGESTED_CATEGORIES, TRANSACTION_TYPES
from .store import StoreError, TransactionStore, UserContext


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


RECENT_TRANSACTIONS_LIMIT = 5
MATCH_RESULTS_SESSION_KEY = "bank_match_results"
MATCH_FILENAME_SESSION_KEY = "bank_match_filename"
FILTER_NAMES = ("type", "category", "q")
FILTER_FIELD_PREFIX = "filter_"


def list_filter_params(values_source, prefix=""):
    """Collect the active list filters, read from ``prefix``-named fields.

    Forms carry the filters under prefixed names so they never shadow the
    transaction's own ``type`` and ``category`` fields.
    """
    params = {}
    for name in FILTER_NAMES:
        value = (values_source.get(prefix + name) or "").strip()
        if value and value != "all":
            params[name] = value
    return params


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "budget_tracker.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO"),
        CURRENCY_SYMBOL="₹",
        SIGNUP_AUTO_SIGN_IN=False,
        BANK_MATCH_DELAY_SECONDS=2.0,
        BANK_STATEMENT_EXTENSIONS=DEFAULT_STATEMENT_EXTENSIONS,
        DEFAULT_REPORT_PERIOD="monthly",
        DEFAULT_REPORT_WINDOW="1month",
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)
    app.logger.setLevel(app.config["LOG_LEVEL"])
    app.extensions["bank_matcher"] = StubBankMatcher(delay_seconds=app.config["BANK_MATCH_DELAY_SECONDS"])

    def database_config():
        return parse_database_config(app.config["DATABASE"], app.config["DATABASE_URL"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except (DATABASE_ERRORS + (RuntimeError,)) as exc:
                message = f"Unable to open database {database_config()['database_name']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (DATABASE_ERRORS + (OSError, RuntimeError)) as exc:
            message = f"Failed to initialize database {database_config()['database_name']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DATABASE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.template_filter("money")
    def money_filter(value):
        return f"{app.config['CURRENCY_SYMBOL']}{float(value or 0):,.2f}"

    def session_provider():
        return SessionProvider(get_db(), session, auto_sign_in=app.config["SIGNUP_AUTO_SIGN_IN"])

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return redirect(url_for("login"))
            return view(**kwargs)

        return wrapped_view

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return f"<h1>Database initialization failed</h1><p>{message}</p>", 500

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "db_health":
            return render_db_init_error_response()

        g.user = None
        g.context = None
        if session.get("user_id") is None:
            return None
        g.user = session_provider().current_user()
        if g.user is None:
            session.clear()
            return None
        g.context = UserContext(user_id=g.user["id"], email=g.user["email"], store=TransactionStore(get_db()))
        return None

    def load_transactions(ctx):
        try:
            return ctx.store.list(ctx.user_id)
        except StoreError as exc:
            flash(str(exc))
            return []

    def form_filter_params():
        return list_filter_params(request.form, prefix=FILTER_FIELD_PREFIX)

    def resolve_choice(value, choices, default):
        value = (value or "").strip()
        return value if value in choices else default

    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/register", methods=("GET", "POST"))
    def register():
        if request.method == "POST":
            try:
                result = session_provider().sign_up(request.form.get("email", ""), request.form.get("password", ""))
            except AuthError as exc:
                flash(str(exc))
                return render_template("register.html", email=request.form.get("email", ""))

            if result.pending_verification:
                flash("Account created! Please sign in.")
                return redirect(url_for("login"))
            flash("Account created!")
            return redirect(url_for("dashboard"))

        return render_template("register.html", email="")

    @app.route("/login", methods=("GET", "POST"))
    def login():
        if request.method == "POST":
            try:
                session_provider().sign_in(request.form.get("email", ""), request.form.get("password", ""))
            except AuthError as exc:
                flash(str(exc))
                return render_template("login.html", email=request.form.get("email", ""))

            flash("You have successfully signed in.")
            return redirect(url_for("dashboard"))

        return render_template("login.html", email="")

    @app.route("/logout")
    def logout():
        session_provider().sign_out()
        return redirect(url_for("login"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        ctx = g.context
        transactions = load_transactions(ctx)
        return render_template(
            "dashboard.html",
            summary=summary_totals(transactions),
            counts=reconciliation_counts(transactions),
            recent=transactions[:RECENT_TRANSACTIONS_LIMIT],
            transaction_count=len(transactions),
        )

    @app.route("/transactions")
    @login_required
    def transactions():
        ctx = g.context
        all_transactions = load_transactions(ctx)
        filters = {
            "type": resolve_choice(request.args.get("type"), TRANSACTION_TYPES, "all"),
            "category": (request.args.get("category") or "all").strip() or "all",
            "q": (request.args.get("q") or "").strip(),
        }
        visible = filter_transactions(
            all_transactions, type=filters["type"], category=filters["category"], search=filters["q"]
        )
        return render_template(
            "transactions.html",
            transactions=visible,
            categories=distinct_categories(all_transactions),
            filters=filters,
            filter_params=list_filter_params(filters),
        )

    @app.route("/transactions/new", methods=("GET", "POST"))
    @login_required
    def create_transaction():
        ctx = g.context
        if request.method == "POST":
            fields = {name: request.form.get(name, "") for name in ("date", "amount", "type", "category", "description")}
            try:
                ctx.store.create(ctx.user_id, fields)
            except StoreError as exc:
                flash(str(exc))
                return render_template(
                    "transaction_form.html", transaction=fields, suggested=SUGGESTED_CATEGORIES, is_new=True
                ), 400

            flash("Your transaction has been successfully recorded.")
            return redirect(url_for("transactions"))

        blank = {"date": date.today().isoformat(), "amount": "", "type": "", "category": "", "description": ""}
        return render_template("transaction_form.html", transaction=blank, suggested=SUGGESTED_CATEGORIES, is_new=True)

    @app.route("/transactions/<transaction_id>/edit", methods=("GET", "POST"))
    @login_required
    def edit_transaction(transaction_id):
        ctx = g.context
        try:
            existing = ctx.store.get(transaction_id, ctx.user_id)
        except StoreError as exc:
            flash(str(exc))
            return redirect(url_for("transactions"))

        if request.method == "POST":
            fields = {name: request.form.get(name, "") for name in ("date", "amount", "type", "category", "description")}
            fields["is_reconciled"] = request.form.get("is_reconciled", "")
            try:
                ctx.store.update(transaction_id, ctx.user_id, fields)
            except StoreError as exc:
                flash(str(exc))
                fields["id"] = transaction_id
                return render_template(
                    "transaction_form.html",
                    transaction=fields,
                    suggested=SUGGESTED_CATEGORIES,
                    is_new=False,
                    filter_params=form_filter_params(),
                ), 400

            flash("Transaction has been updated successfully.")
            return redirect(url_for("transactions", **form_filter_params()))

        return render_template(
            "transaction_form.html",
            transaction=existing,
            suggested=SUGGESTED_CATEGORIES,
            is_new=False,
            filter_params=list_filter_params(request.args),
        )

    @app.post("/transactions/<transaction_id>/amount")
    @login_required
    def update_transaction_amount(transaction_id):
        ctx = g.context
        try:
            ctx.store.update(transaction_id, ctx.user_id, {"amount": request.form.get("amount", "")})
        except StoreError as exc:
            flash(str(exc))
        else:
            flash("Transaction has been updated successfully.")
        return redirect(url_for("transactions", **form_filter_params()))

    @app.post("/transactions/<transaction_id>/reconcile")
    @login_required
    def toggle_reconciled(transaction_id):
        ctx = g.context
        try:
            current = ctx.store.get(transaction_id, ctx.user_id)
            ctx.store.update(transaction_id, ctx.user_id, {"is_reconciled": not current["is_reconciled"]})
        except StoreError as exc:
            flash(str(exc))
        else:
            flash("Transaction has been updated successfully.")
        return redirect(url_for("transactions", **form_filter_params()))

    @app.post("/transactions/<transaction_id>/delete")
    @login_required
    def delete_transaction(transaction_id):
        ctx = g.context
        try:
            ctx.store.delete(transaction_id, ctx.user_id)
        except StoreError as exc:
            app.logger.warning("Delete failed for transaction_id=%s user_id=%s: %s", transaction_id, ctx.user_id, exc)
            flash(str(exc))
        else:
            flash("The transaction has been removed.")
        return redirect(url_for("transactions", **form_filter_params()))

    @app.route("/reports")
    @login_required
    def reports():
        ctx = g.context
        period = resolve_choice(request.args.get("period"), CALENDAR_PERIODS, app.config["DEFAULT_REPORT_PERIOD"])
        transactions = load_transactions(ctx)
        return render_template(
            "reports.html",
            period=period,
            periods=CALENDAR_PERIODS,
            series=bucket_by_period(transactions, period),
            breakdown=category_breakdown(transactions),
            summary=summary_totals(transactions),
        )

    @app.route("/reports/overview")
    @login_required
    def reports_overview():
        ctx = g.context
        window = resolve_choice(request.args.get("window"), REPORT_WINDOWS, app.config["DEFAULT_REPORT_WINDOW"])
        today = date.today()
        in_window = transactions_since(load_transactions(ctx), window_start(window, today))
        return render_template(
            "overview.html",
            window=window,
            windows=WINDOW_LABELS,
            window_label=WINDOW_LABELS[window],
            series=bucket_by_window(in_window, window, today=today),
            summary=summary_totals(in_window),
        )

    @app.get("/reports/data")
    @login_required
    def reports_data():
        ctx = g.context
        transactions = load_transactions(ctx)
        window = (request.args.get("window") or "").strip()
        if window:
            if window not in REPORT_WINDOWS:
                return jsonify({"error": f"Unknown report window: {window}"}), 400
            today = date.today()
            transactions = transactions_since(transactions, window_start(window, today))
            series = bucket_by_window(transactions, window, today=today)
            scope = {"window": window}
        else:
            period = (request.args.get("period") or app.config["DEFAULT_REPORT_PERIOD"]).strip()
            if period not in CALENDAR_PERIODS:
                return jsonify({"error": f"Unknown report period: {period}"}), 400
            series = bucket_by_period(transactions, period)
            scope = {"period": period}

        return jsonify({
            **scope,
            "series": series,
            "categories": category_breakdown(transactions),
            "summary": summary_totals(transactions),
        })

    @app.route("/export/csv")
    @login_required
    def export_transactions_csv():
        ctx = g.context
        transactions = load_transactions(ctx)
        today = date.today()
        window = (request.args.get("window") or "").strip()
        if window in REPORT_WINDOWS:
            transactions = transactions_since(transactions, window_start(window, today))
            scope = window
        else:
            scope = "all"

        app.logger.info("CSV export scope=%s rows=%d user_id=%s", scope, len(transactions), ctx.user_id)
        return Response(
            export_csv(transactions),
            mimetype="text/csv",
            headers={
                "Content-Disposition": f"attachment; filename=financial-report-{scope}-{today.isoformat()}.csv"
            },
        )

    @app.route("/bank-matching", methods=("GET", "POST"))
    @login_required
    def bank_matching():
        ctx = g.context
        if request.method == "POST":
            upload = request.files.get("statement")
            try:
                filename = check_statement_filename(
                    upload.filename if upload else "", app.config["BANK_STATEMENT_EXTENSIONS"]
                )
                results = app.extensions["bank_matcher"].match(filename, upload.read(), load_transactions(ctx))
            except BankMatchError as exc:
                flash(str(exc))
                return redirect(url_for("bank_matching"))

            session[MATCH_RESULTS_SESSION_KEY] = results
            session[MATCH_FILENAME_SESSION_KEY] = filename
            flash(f"Bank Statement Processed. {summarize_results(results)}")
            return redirect(url_for("bank_matching"))

        transactions = load_transactions(ctx)
        return render_template(
            "bank_matching.html",
            results=session.get(MATCH_RESULTS_SESSION_KEY, []),
            filename=session.get(MATCH_FILENAME_SESSION_KEY),
            unreconciled=[t for t in transactions if not t["is_reconciled"]],
            extensions=app.config["BANK_STATEMENT_EXTENSIONS"],
        )

    @app.post("/bank-matching/match")
    @login_required
    def match_bank_record():
        ctx = g.context
        result_id = (request.form.get("result_id") or "").strip()
        transaction_id = (request.form.get("transaction_id") or "").strip()
        try:
            results = mark_result_matched(session.get(MATCH_RESULTS_SESSION_KEY, []), result_id)
            if not transaction_id:
                raise BankMatchError("Please choose a transaction to match.")
            ctx.store.update(transaction_id, ctx.user_id, {"is_reconciled": True})
        except (BankMatchError, StoreError) as exc:
            flash(str(exc))
            return redirect(url_for("bank_matching"))

        session[MATCH_RESULTS_SESSION_KEY] = results
        flash("Transaction has been successfully matched with bank record.")
        return redirect(url_for("bank_matching"))

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
