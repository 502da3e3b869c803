"""Application entry point."""
import os
import click
from flask.cli import with_appcontext
from qr_attendance import create_app, db
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Create Flask app
app = create_app(os.getenv('FLASK_ENV', 'development'))

@app.cli.command()
@with_appcontext
def drop_db():
    """Drop all database tables."""
    if click.confirm('Are you sure you want to drop all tables?'):
        db.drop_all()
        click.echo('Database tables dropped successfully!')

@app.cli.command()
@with_appcontext
def seed_users():
    """Create a demo faculty member and student."""
    from qr_attendance.models.user import User, UserRole

    domain = app.config['STUDENT_EMAIL_DOMAIN']
    users = [
        ('Demo Faculty', 'faculty@example.edu', 'faculty123', UserRole.FACULTY),
        ('Demo Student', f'student{domain}', 'student123', UserRole.STUDENT),
    ]

    for name, email, password, role in users:
        if User.query.filter_by(email=email).first():
            continue
        user = User(email=email, name=name, role=role)
        user.set_password(password)
        db.session.add(user)

    db.session.commit()

    click.echo('Sample users created successfully!')
    for name, email, password, _ in users:
        click.echo(f'{name}: {email} / {password}')

@app.cli.command()
@with_appcontext
def reset_db():
    """Reset database completely."""
    if click.confirm('This will delete all data and recreate tables. Continue?'):
        db.drop_all()
        db.create_all()
        click.echo('Database reset complete!')

if __name__ == '__main__':
    # Development server
    port = int(os.environ.get('PORT', 5000))
    host = os.environ.get('HOST', '127.0.0.1')
    debug = os.environ.get('FLASK_ENV') == 'development'

    # The reloader would start every rotation engine twice
    app.run(host=host, port=port, debug=debug, use_reloader=False)
