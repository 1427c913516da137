from flask import (
    Flask, render_template, request, redirect, url_for, flash,
    abort, jsonify, session
)
from flask_login import LoginManager, current_user, login_required, logout_user
from flask_wtf import CSRFProtect
from flask_wtf.csrf import CSRFError, generate_csrf
from sqlalchemy.exc import SQLAlchemyError
from datetime import timedelta
from decimal import Decimal
import logging
import os

import admin_actions
import auth_service
import gate
import storage_service
from errors import AppError, NotFound, Unauthenticated, UpstreamError, ValidationError
from formatting import format_money, initials, normalize_related, status_badge, to_decimal
from forms import (
    ADDRESS_FIELDS, PROFILE_FIELDS,
    AssignPlanForm, CodeLoginForm, CreateInvestmentForm, CreatePlanForm,
    ForgotPasswordForm, FormState, IdDocumentForm, PasswordLoginForm,
    ProfileForm, ResetPasswordForm, SendCodeForm, SetBalanceForm,
    SignupForm, WithdrawalForm, first_error,
)
from handoff import purchase_message, whatsapp_link, withdrawal_message
from models import (
    db, utcnow, KYCStatus, InvestmentStatus,
    Profile, Balance, Plan, UserPlan, Investment,
)
from plans import pick_featured, plan_tier, range_text
from withdrawals import FEE_AMOUNT, MIN_WITHDRAWAL, check_eligibility

# =========================================================
# App / DB setup
# =========================================================
BASE_DIR = os.path.abspath(os.path.dirname(__file__))

# ------------------------------------------------------
# Environment / security config
# APP_ENV: "dev" or "prod" (default "dev")
# ------------------------------------------------------
APP_ENV = os.getenv("APP_ENV", "dev").lower()
IS_DEV = APP_ENV != "prod"

# Session keys (the Flask session is a signed cookie)
SESSION_TOKENS_KEY = "auth_tokens"
RECOVERY_TOKENS_KEY = "recovery_tokens"
SIGNUP_CODE_KEY = "signup_code_sent_to"
LOGIN_CODE_KEY = "login_code_sent_to"


def _database_url() -> str:
    raw = os.getenv("DATABASE_URL")
    if not raw:
        return f"sqlite:///{os.path.join(BASE_DIR, 'instance', 'app.db')}"
    if raw.startswith("postgres://"):
        raw = raw.replace("postgres://", "postgresql+psycopg2://", 1)
    elif raw.startswith("postgresql://"):
        raw = raw.replace("postgresql://", "postgresql+psycopg2://", 1)
    return raw


app = Flask(
    __name__,
    template_folder=os.path.join(BASE_DIR, "templates"),
    static_folder=os.path.join(BASE_DIR, "static"),
)

# SECRET_KEY: MUST be set via env in production
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "change-me")

if not IS_DEV and app.config["SECRET_KEY"] == "change-me":
    raise RuntimeError(
        "SECURITY ERROR: SECRET_KEY must be set via environment variable in production."
    )

# Session / cookie hardening
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,      # JS can't read session cookie
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=not IS_DEV,  # only send cookie over HTTPS in prod
    PERMANENT_SESSION_LIFETIME=timedelta(minutes=60),
)

os.makedirs(os.path.join(BASE_DIR, "instance"), exist_ok=True)
app.config["SQLALCHEMY_DATABASE_URI"] = _database_url()
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True, "pool_recycle": 300}

# Backend-as-a-service (identity + private storage)
app.config.update(
    SUPABASE_URL=os.getenv("SUPABASE_URL", ""),
    SUPABASE_ANON_KEY=os.getenv("SUPABASE_ANON_KEY", ""),
    SUPABASE_SERVICE_ROLE_KEY=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
    KYC_BUCKET=os.getenv("KYC_BUCKET", "kyc"),
    MAX_CONTENT_LENGTH=10 * 1024 * 1024,
)

# WhatsApp handoff numbers: international format, no "+" and no spaces
app.config["PURCHASE_WHATSAPP_NUMBER"] = os.getenv("PURCHASE_WHATSAPP_NUMBER", "2348012345678")
app.config["WITHDRAW_WHATSAPP_NUMBER"] = os.getenv("WITHDRAW_WHATSAPP_NUMBER", "13476510876")

app.config.setdefault("WTF_CSRF_TIME_LIMIT", None)


def _init_logging(app):
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    app.logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    if not any(getattr(h, "_neonbank", False) for h in app.logger.handlers):
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        sh._neonbank = True
        app.logger.addHandler(sh)
    app.logger.info("Logging ready (env=%s)", APP_ENV)


_init_logging(app)

# ------------------------------------------------------
# CSRF protection
# ------------------------------------------------------
csrf = CSRFProtect(app)

db.init_app(app)
login_manager = LoginManager(app)
login_manager.login_view = "login"


@app.context_processor
def inject_csrf_token():
    """
    Make csrf_token() available in all templates.

    Usage in templates:
      <input type="hidden" name="csrf_token" value="{{ csrf_token() }}">
    """
    return dict(csrf_token=generate_csrf)


@app.context_processor
def inject_nav():
    """Name/initials for the top bar and whether to show the Admin link."""
    if not current_user.is_authenticated:
        return dict(nav_name=None, nav_initials=None, show_admin=False)
    try:
        profile = db.session.get(Profile, current_user.id)
    except SQLAlchemyError:
        db.session.rollback()
        profile = None
    return dict(
        nav_name=(profile.first_name if profile else None) or "User",
        nav_initials=initials(
            profile.first_name if profile else None,
            profile.last_name if profile else None,
        ),
        show_admin=gate.is_admin(current_user.id),
    )


# Make enums, constants and helpers available in all Jinja templates
app.jinja_env.globals["KYCStatus"] = KYCStatus
app.jinja_env.globals["InvestmentStatus"] = InvestmentStatus
app.jinja_env.globals["MIN_WITHDRAWAL"] = MIN_WITHDRAWAL
app.jinja_env.globals["FEE_AMOUNT"] = FEE_AMOUNT
app.jinja_env.filters["money"] = format_money
app.jinja_env.filters["badge"] = status_badge


# =========================================================
# Identity / session
# =========================================================
@login_manager.request_loader
def load_identity(req):
    tokens = session.get(SESSION_TOKENS_KEY)
    if not tokens:
        return None

    identity, refreshed = auth_service.resolve_session(
        tokens.get("access_token"), tokens.get("refresh_token")
    )
    if refreshed:
        # Re-issue the cookie with the new token pair
        session[SESSION_TOKENS_KEY] = refreshed
    elif identity is None:
        session.pop(SESSION_TOKENS_KEY, None)
    return identity


def _start_session(auth_session) -> None:
    session[SESSION_TOKENS_KEY] = auth_session.tokens()
    session.permanent = True


def _safe_next(value) -> str:
    """Only same-site paths are honoured as a post-login destination."""
    if value and value.startswith("/") and not value.startswith("//") and "\\" not in value:
        return value
    return url_for("dashboard")


@app.before_request
def apply_route_gate():
    path = request.path
    if gate.is_excluded(path):
        return None

    identity = current_user if current_user.is_authenticated else None
    decision = gate.decide(path, identity)

    if decision.action == gate.LOGIN:
        return redirect(url_for("login", next=decision.next_path))
    if decision.action == gate.DASHBOARD:
        return redirect(url_for("dashboard"))
    return None


# =========================================================
# Error handling
# =========================================================
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(CSRFError)
def handle_csrf_error(e):
    """
    Friendly handler for CSRF failures instead of a plain 400 page.
    """
    if _wants_json():
        return jsonify(error="CSRF token missing or invalid"), 400
    msg = e.description or "Security error: please refresh the page and try again."
    flash(msg, "error")
    return redirect(request.referrer or url_for("home"))


@app.errorhandler(AppError)
def handle_app_error(e):
    if _wants_json():
        return jsonify(error=e.message), e.status_code
    return render_template("error.html", message=e.message, status=e.status_code), e.status_code


@app.errorhandler(SQLAlchemyError)
def handle_db_error(e):
    db.session.rollback()
    app.logger.warning("database error on %s: %s", request.path, e)
    err = UpstreamError("We couldn't load your data right now. Please try again.")
    return handle_app_error(err)


def _balance_for(user_id: str) -> Decimal:
    row = db.session.get(Balance, user_id)
    return to_decimal(row.amount if row else 0)


def _kyc_label(profile) -> str:
    if profile is None or profile.kyc_status is None:
        return KYCStatus.unverified.value
    return KYCStatus(profile.kyc_status).value


# =========================================================
# Core / Auth
# =========================================================
@app.route("/")
def home():
    return render_template("home.html")


@app.route("/health")
def health():
    return jsonify(ok=True, service="neonbank-web")


@app.route("/auth", methods=["GET", "POST"])
def signup():
    """
    Account creation in two steps on one page:

    - action=send_code -> email a 6-digit code (creates the identity)
    - action=create    -> full validation, verify the code, store the ID
                          image, write the profile (KYC pending) and a zero balance
    """
    form = SignupForm()
    code_sent_to = session.get(SIGNUP_CODE_KEY)

    if request.method == "POST":
        action = (request.form.get("action") or "create").strip()

        if action == "send_code":
            code_form = SendCodeForm()
            if not code_form.validate():
                flash(first_error(code_form), "error")
            else:
                try:
                    auth_service.send_one_time_code(code_form.email.data, create_user=True)
                    session[SIGNUP_CODE_KEY] = code_sent_to = code_form.email.data
                    flash("Verification code sent.", "success")
                except UpstreamError as e:
                    flash(e.message, "error")
            return render_template("auth.html", form=form, code_sent=bool(code_sent_to))

        if not form.validate():
            flash(first_error(form), "error")
            return render_template("auth.html", form=form, code_sent=bool(code_sent_to))

        if not code_sent_to or code_sent_to != form.email.data:
            flash("Send verification code first.", "error")
            return render_template("auth.html", form=form, code_sent=bool(code_sent_to))
        if len(form.code.data or "") != 6:
            flash("Enter the 6-digit code.", "error")
            return render_template("auth.html", form=form, code_sent=True)
        if not form.id_document.data or not form.id_document.data.filename:
            flash("Upload a valid ID image.", "error")
            return render_template("auth.html", form=form, code_sent=True)

        try:
            auth = auth_service.verify_one_time_code(form.email.data, form.code.data)
            path = storage_service.upload_id_document(auth.identity.id, form.id_document.data)

            now = utcnow()
            profile = db.session.get(Profile, auth.identity.id) or Profile(id=auth.identity.id)
            for key, value in form.profile_values().items():
                setattr(profile, key, value)
            profile.id_document_path = path
            profile.kyc_status = KYCStatus.pending
            profile.updated_at = now
            db.session.add(profile)

            if db.session.get(Balance, auth.identity.id) is None:
                db.session.add(Balance(user_id=auth.identity.id, amount=0, updated_at=now))
            db.session.commit()
        except (UpstreamError, ValidationError) as e:
            db.session.rollback()
            flash(e.message, "error")
            return render_template("auth.html", form=form, code_sent=True)
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.warning("signup write failed: %s", e)
            flash("Signup failed. Please try again.", "error")
            return render_template("auth.html", form=form, code_sent=True)

        session.pop(SIGNUP_CODE_KEY, None)
        _start_session(auth)
        app.logger.info("account created for %s", auth.identity.id)
        flash("Account created.", "success")
        return redirect(url_for("dashboard"))

    return render_template("auth.html", form=form, code_sent=bool(code_sent_to))


@app.route("/login", methods=["GET", "POST"])
def login():
    """
    Two ways in:

    - tab=password : email + password
    - tab=code     : email a 6-digit code (existing users only), then verify it

    Honours ?next=/some/path after signing in.
    """
    next_url = request.values.get("next") or ""
    password_form = PasswordLoginForm()
    code_form = CodeLoginForm()
    tab = request.values.get("tab") or "password"
    code_sent = bool(session.get(LOGIN_CODE_KEY))

    def render():
        return render_template(
            "login.html",
            password_form=password_form,
            code_form=code_form,
            tab=tab,
            code_sent=code_sent,
            next_url=next_url,
        )

    if request.method == "POST":
        action = (request.form.get("action") or "password").strip()

        if action == "password":
            tab = "password"
            if not password_form.validate():
                flash(first_error(password_form), "error")
                return render()
            try:
                auth = auth_service.sign_in_with_password(
                    password_form.email.data, password_form.password.data
                )
            except UpstreamError as e:
                flash(e.message, "error")
                return render()
            _start_session(auth)
            flash("Welcome back.", "success")
            return redirect(_safe_next(next_url))

        tab = "code"
        if action == "send_code":
            send_form = SendCodeForm()
            if not send_form.validate():
                flash(first_error(send_form), "error")
                return render()
            try:
                auth_service.send_one_time_code(send_form.email.data, create_user=False)
            except UpstreamError as e:
                flash(e.message, "error")
                return render()
            session[LOGIN_CODE_KEY] = send_form.email.data
            code_sent = True
            flash("Verification code sent to your email.", "success")
            return render()

        if action == "verify":
            if not code_sent:
                flash("Send the code first.", "info")
                return render()
            if not code_form.validate():
                flash(first_error(code_form), "error")
                return render()
            try:
                auth = auth_service.verify_one_time_code(code_form.email.data, code_form.code.data)
            except UpstreamError as e:
                flash(e.message, "error")
                return render()
            session.pop(LOGIN_CODE_KEY, None)
            _start_session(auth)
            flash("Verified. Signed in.", "success")
            return redirect(_safe_next(next_url))

        flash("Unknown sign-in action.", "error")

    return render()


@app.route("/logout", methods=["POST"])
def logout():
    tokens = session.pop(SESSION_TOKENS_KEY, None)
    try:
        auth_service.sign_out(tokens)
    except UpstreamError as e:
        app.logger.info("remote sign out skipped: %s", e.message)
    logout_user()
    session.clear()
    return redirect(url_for("home"))


@app.route("/forgot-password", methods=["GET", "POST"])
def forgot_password():
    form = ForgotPasswordForm()
    if request.method == "POST":
        if not form.validate():
            flash(first_error(form), "error")
            return render_template("forgot_password.html", form=form)
        try:
            auth_service.reset_password(
                form.email.data, url_for("reset_password", _external=True)
            )
        except UpstreamError as e:
            flash(e.message, "error")
            return render_template("forgot_password.html", form=form)

        flash(
            "If an account with that email exists, a password reset link is on its way.",
            "info",
        )
        return redirect(url_for("login"))

    return render_template("forgot_password.html", form=form)


@app.route("/reset-password", methods=["GET", "POST"])
def reset_password():
    """
    Landing page of the recovery email. The link carries
    ?token_hash=...&type=recovery; once verified the recovery session is
    kept in the cookie and the token is dropped from the URL.
    """
    token_hash = request.args.get("token_hash")
    if request.method == "GET" and token_hash and request.args.get("type", "recovery") == "recovery":
        try:
            recovery = auth_service.verify_recovery(token_hash)
            session[RECOVERY_TOKENS_KEY] = recovery.tokens()
        except UpstreamError as e:
            flash(e.message, "error")
        return redirect(url_for("reset_password"))

    form = ResetPasswordForm()
    tokens = session.get(RECOVERY_TOKENS_KEY)

    if request.method == "POST":
        if not tokens:
            flash(
                "This link may be expired or invalid. Please request a new reset link.",
                "error",
            )
            return redirect(url_for("forgot_password"))
        if not form.validate():
            flash(first_error(form), "error")
            return render_template("reset_password.html", form=form, ready=True)
        try:
            auth_service.update_password(tokens, form.password.data)
        except UpstreamError as e:
            flash(e.message, "error")
            return render_template("reset_password.html", form=form, ready=True)

        try:
            auth_service.sign_out(tokens)
        except UpstreamError as e:
            app.logger.info("sign out after reset skipped: %s", e.message)
        session.pop(RECOVERY_TOKENS_KEY, None)
        session.pop(SESSION_TOKENS_KEY, None)
        flash("Password updated. Please sign in.", "success")
        return redirect(url_for("login"))

    return render_template("reset_password.html", form=form, ready=bool(tokens))


# =========================================================
# Dashboard / Investments
# =========================================================
@app.route("/dashboard")
@login_required
def dashboard():
    uid = current_user.id
    profile = db.session.get(Profile, uid)
    active = UserPlan.query.filter_by(user_id=uid, is_active=True).first()
    investments = (
        Investment.query
        .filter_by(user_id=uid)
        .order_by(Investment.created_at.desc())
        .limit(5)
        .all()
    )
    return render_template(
        "dashboard.html",
        profile=profile,
        kyc=_kyc_label(profile),
        balance=_balance_for(uid),
        active_plan=active,
        plan=normalize_related(active.plan) if active else None,
        investments=investments,
    )


@app.route("/invest")
@login_required
def invest():
    investments = (
        Investment.query
        .filter_by(user_id=current_user.id)
        .order_by(Investment.created_at.desc())
        .all()
    )
    total_invested = sum((to_decimal(inv.amount) for inv in investments), Decimal("0"))
    active_count = sum(1 for inv in investments if inv.status == InvestmentStatus.active)
    return render_template(
        "invest.html",
        investments=investments,
        total_invested=total_invested,
        active_count=active_count,
    )


@app.route("/invest/create")
@login_required
def invest_create():
    profile = db.session.get(Profile, current_user.id)
    plans = Plan.query.order_by(Plan.min_amount.asc()).all()
    featured_id = pick_featured(plans)

    display_name = profile.display_name if profile else "User"
    email = (profile.email if profile else None) or current_user.email
    country = profile.country if profile else ""
    number = app.config["PURCHASE_WHATSAPP_NUMBER"]

    cards = [
        {
            "plan": p,
            "featured": p.id == featured_id,
            "tier": plan_tier(p),
            "range": range_text(p.min_amount, p.max_amount),
            "link": whatsapp_link(number, purchase_message(p, display_name, email, country)),
        }
        for p in plans
    ]
    return render_template(
        "invest_create.html",
        cards=cards,
        kyc=_kyc_label(profile),
    )


# =========================================================
# Withdraw
# =========================================================
@app.route("/withdraw", methods=["GET", "POST"])
@login_required
def withdraw():
    profile = db.session.get(Profile, current_user.id)
    balance = _balance_for(current_user.id)
    form = WithdrawalForm()
    confirm = None

    if request.method == "POST":
        if not form.validate():
            flash(first_error(form), "error")
        else:
            fields = form.request_fields()
            result = check_eligibility(fields["amount"], balance, fields)
            if not result.eligible:
                flash(result.reason, "error")
            else:
                message = withdrawal_message(
                    fields,
                    amount=result.amount,
                    balance=balance,
                    minimum=MIN_WITHDRAWAL,
                    fee=FEE_AMOUNT,
                    display_name=profile.display_name if profile else "User",
                    email=(profile.email if profile else None) or current_user.email,
                    country=profile.country if profile else "",
                    kyc=_kyc_label(profile),
                )
                confirm = {
                    "amount": result.amount,
                    "message": message,
                    "link": whatsapp_link(app.config["WITHDRAW_WHATSAPP_NUMBER"], message),
                }
                app.logger.info("withdrawal handoff prepared for %s", current_user.id)

    return render_template(
        "withdraw.html",
        form=form,
        profile=profile,
        kyc=_kyc_label(profile),
        balance=balance,
        confirm=confirm,
    )


# =========================================================
# Profile / KYC document
# =========================================================
def _current_profile() -> Profile:
    profile = db.session.get(Profile, current_user.id)
    if profile is None:
        raise NotFound("Profile not found. Finish creating your account first.")
    return profile


@app.route("/profile", methods=["GET", "POST"])
@login_required
def profile():
    row = _current_profile()
    saved = {name: getattr(row, name) for name in PROFILE_FIELDS}
    form = ProfileForm(data=saved)

    if request.method == "POST":
        if not form.validate():
            flash(first_error(form), "error")
        else:
            changes = FormState.load(saved).edit(**form.values()).changes()
            if not changes:
                flash("Nothing to save.", "info")
                return redirect(url_for("profile"))

            for name, (_old, new) in changes.items():
                setattr(row, name, new)
            if row.kyc_status == KYCStatus.unverified and any(n in ADDRESS_FIELDS for n in changes):
                row.kyc_status = KYCStatus.pending
            row.updated_at = utcnow()
            db.session.commit()
            flash("Saved.", "success")
            return redirect(url_for("profile"))

    return render_template(
        "profile.html",
        profile=row,
        form=form,
        doc_form=IdDocumentForm(formdata=None),
        kyc=_kyc_label(row),
    )


@app.route("/profile/id-document", methods=["POST"])
@login_required
def profile_id_document():
    row = _current_profile()
    form = IdDocumentForm()
    if not form.validate():
        flash(first_error(form), "error")
        return redirect(url_for("profile"))

    try:
        path = storage_service.upload_id_document(row.id, form.id_document.data)
    except (UpstreamError, ValidationError) as e:
        flash(e.message, "error")
        return redirect(url_for("profile"))

    row.id_document_path = path
    row.kyc_status = KYCStatus.pending
    row.updated_at = utcnow()
    db.session.commit()
    flash("ID uploaded.", "success")
    return redirect(url_for("profile"))


@app.route("/profile/id-document/preview")
@login_required
def profile_id_document_preview():
    row = _current_profile()
    if not row.id_document_path:
        raise NotFound("No document uploaded yet.")
    try:
        url = storage_service.create_signed_url(row.id_document_path)
    except UpstreamError as e:
        flash(e.message, "error")
        return redirect(url_for("profile"))
    return redirect(url)


# =========================================================
# Admin
# =========================================================
ADMIN_FORMS = {
    "create_plan": (CreatePlanForm, "Plan created"),
    "set_balance": (SetBalanceForm, "Balance updated"),
    "assign_plan": (AssignPlanForm, "Plan assigned"),
    "create_investment": (CreateInvestmentForm, "Investment created"),
}


def _plan_choices(plans):
    return [("", "Select plan")] + [(p.id, p.name) for p in plans]


@app.route("/admin")
@login_required
def admin_page():
    plans = Plan.query.order_by(Plan.created_at.desc()).all()
    assign_form = AssignPlanForm(formdata=None)
    assign_form.plan_id.choices = _plan_choices(plans)
    return render_template(
        "admin.html",
        plans=plans,
        plan_form=CreatePlanForm(formdata=None),
        balance_form=SetBalanceForm(formdata=None),
        assign_form=assign_form,
        investment_form=CreateInvestmentForm(formdata=None),
    )


@app.route("/admin/actions/<action_name>", methods=["POST"])
@login_required
def admin_action(action_name):
    if action_name not in ADMIN_FORMS:
        abort(404)
    form_cls, success = ADMIN_FORMS[action_name]
    form = form_cls()
    if action_name == "assign_plan":
        form.plan_id.choices = _plan_choices(Plan.query.all())

    if not form.validate():
        flash(first_error(form), "error")
        return redirect(url_for("admin_page"))

    try:
        admin_actions.handle(action_name, form.payload(), current_user.id)
    except AppError as e:
        flash(e.message, "error")
        return redirect(url_for("admin_page"))

    flash(success, "success")
    return redirect(url_for("admin_page"))


@app.route("/api/admin", methods=["POST"])
def api_admin():
    """
    JSON body: {"action": "...", "payload": {...}}.

    Cookie-authenticated, so CSRF applies: callers send the session cookie
    plus an X-CSRFToken header carrying csrf_token() from any rendered page.
    """
    if not current_user.is_authenticated:
        raise Unauthenticated()

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    try:
        result = admin_actions.handle(
            body.get("action"), body.get("payload") or {}, current_user.id
        )
    except AppError as e:
        return jsonify(error=e.message), e.status_code
    return jsonify(result)


# =========================================================
# Main / DB init
# =========================================================
if __name__ == "__main__":
    with app.app_context():
        db.create_all()

    debug_flag = os.getenv("FLASK_DEBUG", "1" if IS_DEV else "0") == "1"
    app.run(debug=debug_flag)
